"""Query classification and store routing."""
from .capabilities import (
    Capability,
    QueryComplexity,
    StoreId,
    Strategy,
    describe_strategies,
    supports,
)
from .classifier import QueryComplexityClassifier, QueryHints
from .router import HealthSnapshot, RoutingDecision, RoutingDecisionEngine, StoreHealth

__all__ = [
    "Capability",
    "QueryComplexity",
    "StoreId",
    "Strategy",
    "describe_strategies",
    "supports",
    "QueryComplexityClassifier",
    "QueryHints",
    "HealthSnapshot",
    "RoutingDecision",
    "RoutingDecisionEngine",
    "StoreHealth",
]
