"""Query complexity classification."""
import hashlib
import json
import re
from dataclasses import asdict, dataclass
from typing import Optional

from .capabilities import QueryComplexity


@dataclass(frozen=True)
class QueryHints:
    """Explicit hints a caller may attach to a query."""
    requested_hop_count: Optional[int] = None
    requires_entity_resolution: bool = False
    requires_community_detection: bool = False
    has_embedding: bool = False
    target_entity_id: Optional[str] = None


COMMUNITY_PATTERN = re.compile(
    r"\b(communit(y|ies)|clusters?|most (influential|central|important)|pagerank)\b",
    re.IGNORECASE,
)
RELATIONSHIP_PATTERN = re.compile(
    r"\b(related to|connected (to|with)|connections? between|relationships?( between)?|linked to|path between)\b",
    re.IGNORECASE,
)


class QueryComplexityClassifier:
    """
    Assigns a complexity class to a query.

    Rules are evaluated in order and the first match wins:

    1. community detection or multi-hop (> 2) reasoning -> COMPLEX_GRAPH
    2. an embedding plus any graph hint                 -> HYBRID_QUERY
    3. a relationship depth of 1-2                      -> RELATIONSHIP_QUERY
    4. a single named entity, no traversal              -> ENTITY_LOOKUP
    5. anything else                                    -> SIMPLE_VECTOR

    Stateless; the same input always yields the same class.
    """

    def classify(self, text: str, hints: Optional[QueryHints] = None) -> QueryComplexity:
        hints = hints or QueryHints()
        text = text or ""
        hops = hints.requested_hop_count if (hints.requested_hop_count or 0) > 0 else None
        mentions_relationship = bool(RELATIONSHIP_PATTERN.search(text))

        if hints.requires_community_detection or COMMUNITY_PATTERN.search(text):
            return QueryComplexity.COMPLEX_GRAPH
        if hops is not None and hops > 2:
            return QueryComplexity.COMPLEX_GRAPH

        has_graph_hint = (
            hops is not None
            or hints.requires_entity_resolution
            or hints.target_entity_id is not None
            or mentions_relationship
        )
        if hints.has_embedding and has_graph_hint:
            return QueryComplexity.HYBRID_QUERY

        if hops is not None or mentions_relationship:
            return QueryComplexity.RELATIONSHIP_QUERY

        if hints.requires_entity_resolution or hints.target_entity_id is not None:
            return QueryComplexity.ENTITY_LOOKUP

        return QueryComplexity.SIMPLE_VECTOR

    @staticmethod
    def fingerprint(text: str, hints: Optional[QueryHints] = None) -> str:
        """Stable cache key for a (text, hints) pair."""
        payload = {
            "text": " ".join((text or "").lower().split()),
            "hints": asdict(hints or QueryHints()),
        }
        encoded = json.dumps(payload, sort_keys=True).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()
