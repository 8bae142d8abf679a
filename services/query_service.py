"""Service for routing and executing queries across both stores."""
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from loguru import logger

from core.errors import (
    DegradedRoutingError,
    GraphQueryError,
    RetrievalError,
    StoreConnectionError,
    ValidationError,
)
from graph.neo4j_store import AnalyticsAlgorithm, Neo4jStore
from graph.records import GraphQueryResult
from retrieval.vector_store import VectorMatch, VectorStore
from routing.capabilities import QueryComplexity, StoreId, Strategy
from routing.classifier import COMMUNITY_PATTERN, QueryHints
from routing.router import RoutingDecision, RoutingDecisionEngine
from .health_service import HealthMonitor


@dataclass
class RetrievalQuery:
    """A query as the router sees it. Embeddings are produced upstream."""
    text: str = ""
    hints: QueryHints = field(default_factory=QueryHints)
    embedding: Optional[List[float]] = None
    start_entity_id: Optional[str] = None
    limit: int = 10
    threshold: Optional[float] = None
    max_depth: int = 2
    relationship_types: List[str] = field(default_factory=list)
    node_labels: List[str] = field(default_factory=list)
    routing_policy: Optional[str] = None  # None uses the engine default

    def effective_hints(self) -> QueryHints:
        """Hints completed with what the query itself carries."""
        return replace(
            self.hints,
            has_embedding=self.hints.has_embedding or bool(self.embedding),
            target_entity_id=self.hints.target_entity_id or self.start_entity_id,
        )

    @property
    def entity_id(self) -> Optional[str]:
        return self.start_entity_id or self.hints.target_entity_id

    @property
    def depth(self) -> int:
        return self.hints.requested_hop_count or self.max_depth


@dataclass
class QueryResult:
    """What a caller gets back: the decision plus whatever each store returned."""
    decision: RoutingDecision
    served_by: List[StoreId] = field(default_factory=list)
    graph: Optional[GraphQueryResult] = None
    vector_matches: List[VectorMatch] = field(default_factory=list)
    entity: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision": self.decision.to_dict(),
            "served_by": [store.value for store in self.served_by],
            "graph": self.graph.to_dict() if self.graph else None,
            "vector_matches": [m.to_dict() for m in self.vector_matches],
            "entity": self.entity,
            "metadata": self.metadata,
        }


class QueryService:
    """
    Routes a query and dispatches it to the chosen store(s).

    A different store's result is only ever substituted when the routing
    decision named it as the fallback.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        graph_store: Neo4jStore,
        health_monitor: HealthMonitor,
        engine: Optional[RoutingDecisionEngine] = None,
    ):
        """
        Initialize query service.

        Args:
            vector_store: Vector/relational execution layer
            graph_store: Graph execution layer
            health_monitor: Source of the current health snapshot
            engine: Routing decision engine
        """
        self.logger = logger.bind(name=self.__class__.__name__)
        self.vector_store = vector_store
        self.graph_store = graph_store
        self.health_monitor = health_monitor
        self.engine = engine or RoutingDecisionEngine()

    def route(self, query: RetrievalQuery) -> RoutingDecision:
        return self.engine.route(
            query.text, query.effective_hints(), self.health_monitor.snapshot(), policy=query.routing_policy
        )

    def process_query(self, query: RetrievalQuery) -> QueryResult:
        """Route and execute in one call."""
        return self.execute(self.route(query), query)

    def execute(self, decision: RoutingDecision, query: RetrievalQuery) -> QueryResult:
        """
        Execute a query according to a routing decision.

        Raises:
            DegradedRoutingError: graph-shaped query while the graph is unavailable
            StoreConnectionError: the chosen store failed and no fallback was chosen
            ValidationError: nothing in the query is executable on the chosen store
        """
        if decision.degraded and decision.complexity.is_graph_shaped:
            raise DegradedRoutingError(decision.reasoning, decision)

        if decision.strategy == Strategy.VECTOR_ONLY:
            result = QueryResult(decision=decision)
            self._run_on(StoreId.POSTGRES, decision, query, result)
        elif decision.strategy == Strategy.GRAPH_ONLY:
            result = QueryResult(decision=decision)
            self._run_on(StoreId.NEO4J, decision, query, result)
        elif decision.strategy == Strategy.VECTOR_PRIMARY_GRAPH_BRIDGE:
            result = self._bridge(decision, query)
        else:
            result = self._with_fallback(decision, query)

        if decision.degraded:
            result.metadata["degraded"] = decision.reasoning
        return result

    def _run_on(self, store: StoreId, decision: RoutingDecision, query: RetrievalQuery, result: QueryResult):
        if store == StoreId.POSTGRES:
            self._vector_part(decision, query, result)
        else:
            self._graph_part(decision, query, result)
        result.served_by.append(store)

    def _vector_part(self, decision: RoutingDecision, query: RetrievalQuery, result: QueryResult):
        wants_entity = decision.complexity == QueryComplexity.ENTITY_LOOKUP and query.entity_id
        if wants_entity or (not query.embedding and query.entity_id):
            result.entity = self.vector_store.entity_lookup(query.entity_id)
        elif query.embedding:
            result.vector_matches = self.vector_store.similarity_search(
                query.embedding, limit=query.limit, threshold=query.threshold
            )
        else:
            raise ValidationError("Query has neither an embedding nor a target entity for the vector store")

    def _graph_part(self, decision: RoutingDecision, query: RetrievalQuery, result: QueryResult):
        wants_communities = query.hints.requires_community_detection or bool(COMMUNITY_PATTERN.search(query.text or ""))
        traversal = decision.complexity.is_graph_shaped or decision.complexity == QueryComplexity.HYBRID_QUERY

        if decision.complexity == QueryComplexity.COMPLEX_GRAPH and wants_communities:
            result.graph = self.graph_store.run_analytics(
                AnalyticsAlgorithm.COMMUNITY_DETECTION.value, {}, limit=query.limit
            )
        elif query.entity_id and traversal:
            result.graph = self.graph_store.traverse(
                query.entity_id,
                max_depth=query.depth,
                relationship_types=query.relationship_types,
                node_labels=query.node_labels,
                limit=query.limit,
            )
        elif query.entity_id:
            node = self.graph_store.lookup_entity(query.entity_id)
            result.graph = GraphQueryResult(
                query="MATCH (e:Entity {id: $id}) RETURN e LIMIT 1",
                parameters={"id": query.entity_id},
                result_count=1 if node else 0,
                execution_time_ms=0.0,
                nodes=[node] if node else [],
            )
        elif query.embedding:
            result.graph = self.graph_store.find_similar_entities(
                query.embedding,
                limit=query.limit,
                threshold=query.threshold if query.threshold is not None else 0.0,
            )
        else:
            raise ValidationError("Graph query needs a start entity or an embedding")

    def _bridge(self, decision: RoutingDecision, query: RetrievalQuery) -> QueryResult:
        if not query.entity_id:
            raise ValidationError("Entity lookup needs a target_entity_id")
        result = QueryResult(decision=decision)
        self._run_on(StoreId.POSTGRES, decision, query, result)
        try:
            result.graph = self.graph_store.traverse(query.entity_id, max_depth=1, limit=query.limit)
            result.served_by.append(StoreId.NEO4J)
            result.metadata["graph_bridge"] = "ok"
        except RetrievalError as e:
            self.logger.warning(f"Graph enrichment failed for {query.entity_id}: {e}")
            result.metadata["graph_bridge"] = f"unavailable: {e}"
        return result

    def _with_fallback(self, decision: RoutingDecision, query: RetrievalQuery) -> QueryResult:
        result = QueryResult(decision=decision)
        try:
            self._run_on(decision.primary_store, decision, query, result)
        except (StoreConnectionError, GraphQueryError) as e:
            if decision.fallback_store is None:
                raise
            self.logger.warning(
                f"{decision.primary_store.value} failed ({e}), falling back to {decision.fallback_store.value}"
            )
            result.metadata["fallback_reason"] = str(e)
            self._run_on(decision.fallback_store, decision, query, result)
            return result

        if decision.strategy == Strategy.HYBRID and decision.fallback_store is not None:
            try:
                self._run_on(decision.fallback_store, decision, query, result)
            except RetrievalError as e:
                self.logger.warning(f"Secondary store {decision.fallback_store.value} failed: {e}")
                result.metadata["secondary_error"] = str(e)
        return result
