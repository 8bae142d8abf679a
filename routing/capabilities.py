"""Static description of both stores and the routing strategies."""
from enum import Enum
from types import MappingProxyType
from typing import Dict, FrozenSet, List


class StoreId(str, Enum):
    """The two backing stores."""
    POSTGRES = "postgres"  # vector/relational
    NEO4J = "neo4j"        # graph


class Capability(str, Enum):
    VECTOR_SIMILARITY = "vector_similarity"
    FULL_TEXT_SEARCH = "full_text_search"
    ANALYTICS = "analytics"
    CACHING = "caching"
    GRAPH_TRAVERSAL = "graph_traversal"
    ENTITY_RESOLUTION = "entity_resolution"
    RELATIONSHIP_INFERENCE = "relationship_inference"
    COMMUNITY_DETECTION = "community_detection"


class Strategy(str, Enum):
    """Routing strategies a decision can select."""
    VECTOR_ONLY = "vector_only"
    GRAPH_ONLY = "graph_only"
    HYBRID = "hybrid"
    VECTOR_PRIMARY_GRAPH_BRIDGE = "vector_primary_graph_bridge"
    GRAPH_PRIMARY_VECTOR_FALLBACK = "graph_primary_vector_fallback"


class QueryComplexity(str, Enum):
    """
    Complexity classes assigned by the classifier.

    The first four are ordered by expected cost (see ``cost_rank``);
    HYBRID_QUERY is orthogonal and always implies both stores.
    """
    SIMPLE_VECTOR = "simple_vector"
    ENTITY_LOOKUP = "entity_lookup"
    RELATIONSHIP_QUERY = "relationship_query"
    COMPLEX_GRAPH = "complex_graph"
    HYBRID_QUERY = "hybrid_query"

    @property
    def cost_rank(self) -> int:
        """Expected cost rank; -1 for the orthogonal hybrid class."""
        return _COST_RANK[self]

    @property
    def is_graph_shaped(self) -> bool:
        return self in (QueryComplexity.RELATIONSHIP_QUERY, QueryComplexity.COMPLEX_GRAPH)


_COST_RANK = {
    QueryComplexity.SIMPLE_VECTOR: 0,
    QueryComplexity.ENTITY_LOOKUP: 1,
    QueryComplexity.RELATIONSHIP_QUERY: 2,
    QueryComplexity.COMPLEX_GRAPH: 3,
    QueryComplexity.HYBRID_QUERY: -1,
}


STORE_CAPABILITIES = MappingProxyType({
    StoreId.POSTGRES: frozenset({
        Capability.VECTOR_SIMILARITY,
        Capability.FULL_TEXT_SEARCH,
        Capability.ANALYTICS,
        Capability.CACHING,
    }),
    StoreId.NEO4J: frozenset({
        Capability.GRAPH_TRAVERSAL,
        Capability.ENTITY_RESOLUTION,
        Capability.RELATIONSHIP_INFERENCE,
        Capability.COMMUNITY_DETECTION,
    }),
})

STRATEGY_DESCRIPTIONS = MappingProxyType({
    Strategy.VECTOR_ONLY: "Vector similarity on the relational store only",
    Strategy.GRAPH_ONLY: "Traversal and analytics on the graph store only",
    Strategy.HYBRID: "Both stores, lower-latency store first, merged results",
    Strategy.VECTOR_PRIMARY_GRAPH_BRIDGE: "Relational lookup enriched with graph relationship context",
    Strategy.GRAPH_PRIMARY_VECTOR_FALLBACK: "Graph first, relational vector search as fallback",
})


def supports(store: StoreId, capability: Capability) -> bool:
    """Check whether a store natively supports a capability."""
    return capability in STORE_CAPABILITIES[store]


def stores_supporting(capability: Capability) -> FrozenSet[StoreId]:
    return frozenset(s for s, caps in STORE_CAPABILITIES.items() if capability in caps)


def other_store(store: StoreId) -> StoreId:
    return StoreId.NEO4J if store == StoreId.POSTGRES else StoreId.POSTGRES


def describe_strategies() -> List[Dict[str, str]]:
    """List strategies with their descriptions (for the routing API)."""
    return [
        {"name": strategy.value, "description": STRATEGY_DESCRIPTIONS[strategy]}
        for strategy in Strategy
    ]
