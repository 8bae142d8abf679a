"""Graph database module for Neo4j execution."""
from .connection import Neo4jConnection
from .neo4j_store import AnalyticsAlgorithm, MirrorWrite, Neo4jStore
from .records import (
    GraphList,
    GraphNode,
    GraphPath,
    GraphQueryResult,
    GraphRelationship,
    GraphScalar,
    PathSegment,
    ValueKind,
)

__all__ = [
    "Neo4jConnection",
    "Neo4jStore",
    "AnalyticsAlgorithm",
    "MirrorWrite",
    "GraphList",
    "GraphNode",
    "GraphPath",
    "GraphQueryResult",
    "GraphRelationship",
    "GraphScalar",
    "PathSegment",
    "ValueKind",
]
