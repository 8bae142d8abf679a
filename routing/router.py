"""Routing decision engine: picks a strategy and stores for a query."""
import threading
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger

from config.settings import Settings, settings as default_settings
from core.errors import ValidationError
from .capabilities import (
    Capability,
    QueryComplexity,
    StoreId,
    Strategy,
    other_store,
    stores_supporting,
)
from .classifier import QueryComplexityClassifier, QueryHints


@dataclass(frozen=True)
class StoreHealth:
    """Result of one health probe against a store."""
    healthy: bool
    latency_ms: float = -1
    error: Optional[str] = None
    checked_at: Optional[datetime] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.healthy,
            "latency_ms": self.latency_ms,
            "error": self.error,
            "checked_at": self.checked_at.isoformat() if self.checked_at else None,
            **self.details,
        }


@dataclass(frozen=True)
class HealthSnapshot:
    """Health of both stores at one point in time."""
    postgres: StoreHealth
    neo4j: StoreHealth

    def get(self, store: StoreId) -> StoreHealth:
        return self.postgres if store == StoreId.POSTGRES else self.neo4j

    def is_healthy(self, store: StoreId) -> bool:
        return self.get(store).healthy

    @classmethod
    def unknown(cls) -> "HealthSnapshot":
        pending = StoreHealth(healthy=False, error="not checked yet")
        return cls(postgres=pending, neo4j=pending)

    def to_dict(self) -> Dict[str, Any]:
        return {StoreId.POSTGRES.value: self.postgres.to_dict(), StoreId.NEO4J.value: self.neo4j.to_dict()}


@dataclass(frozen=True)
class RoutingDecision:
    """The chosen strategy and stores for one query."""
    strategy: Strategy
    primary_store: StoreId
    reasoning: str
    complexity: QueryComplexity
    fallback_store: Optional[StoreId] = None
    degraded: bool = False
    policy: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "primary_store": self.primary_store.value,
            "fallback_store": self.fallback_store.value if self.fallback_store else None,
            "reasoning": self.reasoning,
            "complexity": self.complexity.value,
            "degraded": self.degraded,
            "policy": self.policy,
        }


# A routing policy maps (complexity, health) to a decision
RoutingPolicy = Callable[[QueryComplexity, HealthSnapshot], RoutingDecision]

ADAPTIVE = "adaptive"
VECTOR_FIRST = "vector_first"
GRAPH_FIRST = "graph_first"


class RoutingDecisionEngine:
    """
    Maps (complexity, store health) to a RoutingDecision through a named
    routing policy.

    Three policies are registered up front: ``adaptive`` (the default),
    ``vector_first`` and ``graph_first``. More can be added with
    ``register_policy``. Whatever the policy, both-stores-down is answered
    before it runs, and a decision whose primary store is unhealthy while
    the other one is up is replaced by the adaptive one.

    Pure decision logic: never queries a store. The only error it raises is
    ValidationError for an unknown policy name.
    """

    def __init__(
        self,
        classifier: Optional[QueryComplexityClassifier] = None,
        default_policy: Optional[str] = None,
        config: Optional[Settings] = None,
    ):
        """
        Initialize routing engine.

        Args:
            classifier: Complexity classifier
            default_policy: Policy used when a query names none; defaults to
                the ``routing_policy`` setting
            config: Settings override
        """
        self.logger = logger.bind(name=self.__class__.__name__)
        self.classifier = classifier or QueryComplexityClassifier()
        self.settings = config or default_settings
        self._lock = threading.Lock()
        self._policies: Dict[str, Tuple[RoutingPolicy, str]] = {}
        self._by_policy: Counter = Counter()
        self._by_strategy: Counter = Counter()
        self._degraded = 0

        self.register_policy(
            ADAPTIVE, self._adaptive,
            "Routes on query complexity and store health; hybrid queries start on the faster store",
        )
        self.register_policy(
            VECTOR_FIRST, self._vector_first,
            "Prefers the relational store: entity lookups skip graph enrichment, hybrid queries start on postgres",
        )
        self.register_policy(
            GRAPH_FIRST, self._graph_first,
            "Prefers the graph store: entities are resolved in the graph, hybrid queries start on neo4j "
            "with vector search as fallback",
        )
        self._default_policy = ADAPTIVE
        self.set_default_policy(default_policy or self.settings.routing_policy)

    # ------------------------------------------------------------------
    # Policy registry
    # ------------------------------------------------------------------

    def register_policy(self, name: str, policy: RoutingPolicy, description: str = ""):
        """Add or replace a named policy."""
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Routing policy name must be a non-empty string")
        if not callable(policy):
            raise ValidationError(f"Routing policy '{name}' is not callable")
        with self._lock:
            self._policies[name] = (policy, description)
        self.logger.debug(f"Registered routing policy {name}")

    def set_default_policy(self, name: str):
        with self._lock:
            if name not in self._policies:
                raise ValidationError(
                    f"Unknown routing policy '{name}', available: {', '.join(self._policies)}"
                )
            self._default_policy = name
        self.logger.info(f"Default routing policy: {name}")

    @property
    def default_policy(self) -> str:
        return self._default_policy

    def available_policies(self) -> List[Dict[str, str]]:
        with self._lock:
            return [{"name": name, "description": description} for name, (_, description) in self._policies.items()]

    def _resolve(self, name: Optional[str]) -> Tuple[str, RoutingPolicy]:
        with self._lock:
            name = name or self._default_policy
            entry = self._policies.get(name)
        if entry is None:
            raise ValidationError(f"Unknown routing policy '{name}', available: {', '.join(self._policies)}")
        return name, entry[0]

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def route(
        self,
        text: str,
        hints: Optional[QueryHints],
        health: HealthSnapshot,
        policy: Optional[str] = None,
    ) -> RoutingDecision:
        """Classify a query and decide where it goes."""
        complexity = self.classifier.classify(text, hints)
        decision = self.decide(complexity, health, policy)
        self.logger.info(
            f"Routing {complexity.value} -> {decision.strategy.value} "
            f"(policy={decision.policy}, primary={decision.primary_store.value}, degraded={decision.degraded})"
        )
        return decision

    def decide(
        self,
        complexity: QueryComplexity,
        health: HealthSnapshot,
        policy: Optional[str] = None,
    ) -> RoutingDecision:
        """
        Decide with the named policy, or the default one.

        Raises:
            ValidationError: the policy name is not registered
        """
        name, evaluate = self._resolve(policy)

        if not health.is_healthy(StoreId.POSTGRES) and not health.is_healthy(StoreId.NEO4J):
            decision = self._both_down(complexity, health)
        else:
            decision = self._apply(name, evaluate, complexity, health)

        decision = replace(decision, policy=name)
        self._record(decision)
        return decision

    def _apply(self, name: str, evaluate: RoutingPolicy,
               complexity: QueryComplexity, health: HealthSnapshot) -> RoutingDecision:
        try:
            decision = evaluate(complexity, health)
        except Exception as e:
            self.logger.warning(f"Routing policy {name} failed ({e}), using {ADAPTIVE}")
            return self._adaptive(complexity, health)

        if not isinstance(decision, RoutingDecision):
            self.logger.warning(f"Routing policy {name} returned {type(decision).__name__}, using {ADAPTIVE}")
            return self._adaptive(complexity, health)
        if not health.is_healthy(decision.primary_store):
            self.logger.warning(
                f"Routing policy {name} picked unhealthy {decision.primary_store.value}, using {ADAPTIVE}"
            )
            return self._adaptive(complexity, health)
        return decision

    def _record(self, decision: RoutingDecision):
        with self._lock:
            self._by_policy[decision.policy] += 1
            self._by_strategy[decision.strategy.value] += 1
            if decision.degraded:
                self._degraded += 1

    def get_routing_stats(self) -> Dict[str, Any]:
        """Registered policies, the default one and decision counts since start."""
        policies = self.available_policies()
        with self._lock:
            return {
                "default_policy": self._default_policy,
                "available_policies": [p["name"] for p in policies],
                "policies": policies,
                "total_decisions": sum(self._by_policy.values()),
                "decisions_by_policy": dict(self._by_policy),
                "decisions_by_strategy": dict(self._by_strategy),
                "degraded_decisions": self._degraded,
            }

    # ------------------------------------------------------------------
    # Built-in policies
    # ------------------------------------------------------------------

    def _adaptive(self, complexity: QueryComplexity, health: HealthSnapshot) -> RoutingDecision:
        postgres_up = health.is_healthy(StoreId.POSTGRES)
        neo4j_up = health.is_healthy(StoreId.NEO4J)

        if not postgres_up and not neo4j_up:
            return self._both_down(complexity, health)
        if complexity == QueryComplexity.SIMPLE_VECTOR:
            return self._simple_vector(complexity, postgres_up)
        if complexity == QueryComplexity.ENTITY_LOOKUP:
            return self._entity_lookup(complexity, postgres_up, neo4j_up)
        if complexity.is_graph_shaped:
            return self._graph_shaped(complexity, neo4j_up)
        if complexity == QueryComplexity.HYBRID_QUERY:
            return self._hybrid(complexity, health, postgres_up, neo4j_up)

        # Unreachable while QueryComplexity has five members
        return RoutingDecision(
            strategy=Strategy.VECTOR_ONLY,
            primary_store=StoreId.POSTGRES if postgres_up else StoreId.NEO4J,
            complexity=complexity,
            degraded=True,
            reasoning=f"Unrecognized complexity {complexity!r}, defaulting to vector_only",
        )

    def _vector_first(self, complexity: QueryComplexity, health: HealthSnapshot) -> RoutingDecision:
        postgres_up = health.is_healthy(StoreId.POSTGRES)
        neo4j_up = health.is_healthy(StoreId.NEO4J)

        if postgres_up and complexity == QueryComplexity.ENTITY_LOOKUP:
            return RoutingDecision(
                strategy=Strategy.VECTOR_ONLY,
                primary_store=StoreId.POSTGRES,
                complexity=complexity,
                reasoning="Vector-first: entity lookup answered by the relational store alone",
            )
        if postgres_up and neo4j_up and complexity == QueryComplexity.HYBRID_QUERY:
            return RoutingDecision(
                strategy=Strategy.HYBRID,
                primary_store=StoreId.POSTGRES,
                fallback_store=StoreId.NEO4J,
                complexity=complexity,
                reasoning="Vector-first: hybrid query, postgres first regardless of latency",
            )
        return self._adaptive(complexity, health)

    def _graph_first(self, complexity: QueryComplexity, health: HealthSnapshot) -> RoutingDecision:
        postgres_up = health.is_healthy(StoreId.POSTGRES)
        neo4j_up = health.is_healthy(StoreId.NEO4J)

        if neo4j_up and complexity == QueryComplexity.ENTITY_LOOKUP:
            return RoutingDecision(
                strategy=Strategy.GRAPH_ONLY,
                primary_store=StoreId.NEO4J,
                complexity=complexity,
                reasoning="Graph-first: entity resolved directly in the graph",
            )
        if postgres_up and neo4j_up and complexity == QueryComplexity.HYBRID_QUERY:
            return RoutingDecision(
                strategy=Strategy.GRAPH_PRIMARY_VECTOR_FALLBACK,
                primary_store=StoreId.NEO4J,
                fallback_store=StoreId.POSTGRES,
                complexity=complexity,
                reasoning="Graph-first: hybrid query on the graph, vector search if it fails",
            )
        # similarity is only native on the relational store
        return self._adaptive(complexity, health)

    # ------------------------------------------------------------------
    # Adaptive cases
    # ------------------------------------------------------------------

    @staticmethod
    def _both_down(complexity: QueryComplexity, health: HealthSnapshot) -> RoutingDecision:
        return RoutingDecision(
            strategy=Strategy.VECTOR_ONLY,
            primary_store=StoreId.POSTGRES,
            complexity=complexity,
            degraded=True,
            reasoning=(
                "Degraded mode: both stores unhealthy "
                f"(postgres: {health.postgres.error or 'unhealthy'}; "
                f"neo4j: {health.neo4j.error or 'unhealthy'}), defaulting to vector_only"
            ),
        )

    def _simple_vector(self, complexity: QueryComplexity, postgres_up: bool) -> RoutingDecision:
        if postgres_up:
            return RoutingDecision(
                strategy=Strategy.VECTOR_ONLY,
                primary_store=StoreId.POSTGRES,
                complexity=complexity,
                reasoning="Pure similarity search, relational store with vector index is optimal",
            )
        native = ", ".join(sorted(s.value for s in stores_supporting(Capability.VECTOR_SIMILARITY)))
        return RoutingDecision(
            strategy=Strategy.GRAPH_ONLY,
            primary_store=StoreId.NEO4J,
            complexity=complexity,
            degraded=True,
            reasoning=(
                f"Vector store unavailable (native similarity only on: {native}); "
                "graph results are a centrality-ranked approximation, not nearest neighbours"
            ),
        )

    def _entity_lookup(self, complexity: QueryComplexity, postgres_up: bool, neo4j_up: bool) -> RoutingDecision:
        if postgres_up and neo4j_up:
            return RoutingDecision(
                strategy=Strategy.VECTOR_PRIMARY_GRAPH_BRIDGE,
                primary_store=StoreId.POSTGRES,
                fallback_store=StoreId.NEO4J,
                complexity=complexity,
                reasoning="Entity lookup on the relational store, enriched with graph relationship context",
            )
        if postgres_up:
            return RoutingDecision(
                strategy=Strategy.VECTOR_ONLY,
                primary_store=StoreId.POSTGRES,
                complexity=complexity,
                reasoning="Entity lookup on the relational store; graph unavailable, no relationship enrichment",
            )
        return RoutingDecision(
            strategy=Strategy.GRAPH_ONLY,
            primary_store=StoreId.NEO4J,
            complexity=complexity,
            degraded=True,
            reasoning="Relational store unavailable, resolving the entity directly in the graph",
        )

    def _graph_shaped(self, complexity: QueryComplexity, neo4j_up: bool) -> RoutingDecision:
        if neo4j_up:
            return RoutingDecision(
                strategy=Strategy.GRAPH_ONLY,
                primary_store=StoreId.NEO4J,
                complexity=complexity,
                reasoning=f"{complexity.value} needs native traversal, graph store is optimal",
            )
        return RoutingDecision(
            strategy=Strategy.VECTOR_ONLY,
            primary_store=StoreId.POSTGRES,
            complexity=complexity,
            degraded=True,
            reasoning="Graph unavailable, traversal not possible, returning empty result with explanation",
        )

    def _hybrid(self, complexity: QueryComplexity, health: HealthSnapshot,
                postgres_up: bool, neo4j_up: bool) -> RoutingDecision:
        if postgres_up and neo4j_up:
            primary = (
                StoreId.POSTGRES
                if health.postgres.latency_ms <= health.neo4j.latency_ms
                else StoreId.NEO4J
            )
            return RoutingDecision(
                strategy=Strategy.HYBRID,
                primary_store=primary,
                fallback_store=other_store(primary),
                complexity=complexity,
                reasoning=(
                    f"Hybrid query, {primary.value} first (lower latency: "
                    f"{health.get(primary).latency_ms:.0f}ms)"
                ),
            )
        healthy = StoreId.POSTGRES if postgres_up else StoreId.NEO4J
        return RoutingDecision(
            strategy=Strategy.VECTOR_ONLY if healthy == StoreId.POSTGRES else Strategy.GRAPH_ONLY,
            primary_store=healthy,
            complexity=complexity,
            degraded=True,
            reasoning=f"Hybrid query but {other_store(healthy).value} unavailable, using {healthy.value} only",
        )
