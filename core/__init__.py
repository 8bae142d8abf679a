"""Core error types shared across the retrieval layers."""
from .errors import (
    RetrievalError,
    StoreConnectionError,
    StoreTimeoutError,
    ValidationError,
    UnsupportedOperationError,
    GraphQueryError,
    PartialBatchFailure,
    DegradedRoutingError,
)

__all__ = [
    "RetrievalError",
    "StoreConnectionError",
    "StoreTimeoutError",
    "ValidationError",
    "UnsupportedOperationError",
    "GraphQueryError",
    "PartialBatchFailure",
    "DegradedRoutingError",
]
