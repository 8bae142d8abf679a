"""Error taxonomy shared by the routing, execution and sync layers."""
from typing import List, Optional


class RetrievalError(Exception):
    """Base class for all errors raised by the retrieval core."""


class StoreConnectionError(RetrievalError):
    """A store is unreachable or rejected our credentials."""

    def __init__(self, store: str, message: str):
        super().__init__(f"{store}: {message}")
        self.store = store


class StoreTimeoutError(StoreConnectionError):
    """A store call exceeded its timeout."""


class ValidationError(RetrievalError):
    """Malformed or out-of-range parameters, rejected before any store call."""


class UnsupportedOperationError(RetrievalError):
    """The requested operation (e.g. analytics algorithm) is not supported."""


class GraphQueryError(RetrievalError):
    """The graph store rejected a query for a reason other than connectivity."""


class PartialBatchFailure(RetrievalError):
    """One or more items of a sync batch failed; the run still completed."""

    def __init__(self, errors: List[str]):
        super().__init__(f"{len(errors)} sync item(s) failed: " + "; ".join(errors[:5]))
        self.errors = list(errors)


class DegradedRoutingError(RetrievalError):
    """
    The natural strategy for a query is unavailable.

    Carries the routing decision so callers can surface its reasoning
    instead of an empty result of the wrong shape.
    """

    def __init__(self, reasoning: str, decision: Optional[object] = None):
        super().__init__(reasoning)
        self.reasoning = reasoning
        self.decision = decision
