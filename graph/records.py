"""
Typed values returned by the graph store.

Every value coming back from Neo4j is decoded once, at the connection
boundary, into one of five variants: scalar, node, relationship, path or
list. Code above the connection dispatches on ``value.kind`` only.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from neo4j.graph import Node, Path, Relationship


class ValueKind(str, Enum):
    SCALAR = "scalar"
    NODE = "node"
    RELATIONSHIP = "relationship"
    PATH = "path"
    LIST = "list"


@dataclass(frozen=True)
class GraphScalar:
    value: Any
    kind: ClassVar[ValueKind] = ValueKind.SCALAR

    def to_dict(self) -> Any:
        return self.value


@dataclass(frozen=True)
class GraphNode:
    id: str
    labels: Tuple[str, ...] = ()
    properties: Dict[str, Any] = field(default_factory=dict)
    kind: ClassVar[ValueKind] = ValueKind.NODE

    def get(self, key: str, default: Any = None) -> Any:
        return self.properties.get(key, default)

    @property
    def centrality(self) -> float:
        score = self.properties.get("centralityScore")
        return float(score) if isinstance(score, (int, float)) else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "labels": list(self.labels), "properties": dict(self.properties)}


@dataclass(frozen=True)
class GraphRelationship:
    id: str
    type: str
    start_node_id: str
    end_node_id: str
    properties: Dict[str, Any] = field(default_factory=dict)
    kind: ClassVar[ValueKind] = ValueKind.RELATIONSHIP

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "start_node_id": self.start_node_id,
            "end_node_id": self.end_node_id,
            "properties": dict(self.properties),
        }


@dataclass(frozen=True)
class PathSegment:
    start: GraphNode
    relationship: GraphRelationship
    end: GraphNode

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start.to_dict(),
            "relationship": self.relationship.to_dict(),
            "end": self.end.to_dict(),
        }


@dataclass(frozen=True)
class GraphPath:
    start: GraphNode
    end: GraphNode
    segments: Tuple[PathSegment, ...] = ()
    kind: ClassVar[ValueKind] = ValueKind.PATH

    @property
    def length(self) -> int:
        return len(self.segments)

    @property
    def nodes(self) -> List[GraphNode]:
        if not self.segments:
            return [self.start]
        return [self.segments[0].start] + [segment.end for segment in self.segments]

    @property
    def relationships(self) -> List[GraphRelationship]:
        return [segment.relationship for segment in self.segments]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start.to_dict(),
            "end": self.end.to_dict(),
            "segments": [segment.to_dict() for segment in self.segments],
            "length": self.length,
        }


@dataclass(frozen=True)
class GraphList:
    items: Tuple[Any, ...] = ()
    kind: ClassVar[ValueKind] = ValueKind.LIST

    def to_dict(self) -> List[Any]:
        return [item.to_dict() for item in self.items]


def _native(value: Any) -> Any:
    # neo4j.time temporal types convert to their datetime counterparts
    to_native = getattr(value, "to_native", None)
    return to_native() if callable(to_native) else value


def _properties(entity) -> Dict[str, Any]:
    return {key: _native(value) for key, value in dict(entity).items()}


def decode_node(node: Node) -> GraphNode:
    return GraphNode(id=node.element_id, labels=tuple(sorted(node.labels)), properties=_properties(node))


def decode_relationship(rel: Relationship) -> GraphRelationship:
    return GraphRelationship(
        id=rel.element_id,
        type=rel.type,
        start_node_id=rel.start_node.element_id if rel.start_node is not None else "",
        end_node_id=rel.end_node.element_id if rel.end_node is not None else "",
        properties=_properties(rel),
    )


def decode_path(path: Path) -> GraphPath:
    nodes = [decode_node(n) for n in path.nodes]
    rels = [decode_relationship(r) for r in path.relationships]
    segments = tuple(
        PathSegment(start=nodes[i], relationship=rel, end=nodes[i + 1])
        for i, rel in enumerate(rels)
    )
    return GraphPath(start=nodes[0], end=nodes[-1], segments=segments)


def decode_value(value: Any):
    """Convert a raw driver value into its tagged variant."""
    if isinstance(value, Node):
        return decode_node(value)
    if isinstance(value, Relationship):
        return decode_relationship(value)
    if isinstance(value, Path):
        return decode_path(value)
    if isinstance(value, (list, tuple)):
        return GraphList(items=tuple(decode_value(item) for item in value))
    return GraphScalar(value=_native(value))


def unwrap(value: Any) -> Any:
    """Plain Python value of a scalar; other variants are returned as-is."""
    if getattr(value, "kind", None) == ValueKind.SCALAR:
        return value.value
    return value


def nodes_in(value: Any) -> List[GraphNode]:
    """Collect nodes from a value, walking lists and paths."""
    kind = getattr(value, "kind", None)
    if kind == ValueKind.NODE:
        return [value]
    if kind == ValueKind.PATH:
        return value.nodes
    if kind == ValueKind.LIST:
        return [node for item in value.items for node in nodes_in(item)]
    return []


def relationships_in(value: Any) -> List[GraphRelationship]:
    """Collect relationships from a value, walking lists and paths."""
    kind = getattr(value, "kind", None)
    if kind == ValueKind.RELATIONSHIP:
        return [value]
    if kind == ValueKind.PATH:
        return value.relationships
    if kind == ValueKind.LIST:
        return [rel for item in value.items for rel in relationships_in(item)]
    return []


@dataclass
class GraphQueryResult:
    """Uniform envelope returned by every graph operation."""
    query: str
    parameters: Dict[str, Any]
    result_count: int
    execution_time_ms: float
    paths: List[GraphPath] = field(default_factory=list)
    nodes: List[GraphNode] = field(default_factory=list)
    relationships: List[GraphRelationship] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    reasoning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "parameters": self.parameters,
            "result_count": self.result_count,
            "execution_time_ms": self.execution_time_ms,
            "paths": [p.to_dict() for p in self.paths],
            "nodes": [n.to_dict() for n in self.nodes],
            "relationships": [r.to_dict() for r in self.relationships],
            "metadata": self.metadata,
            "reasoning": self.reasoning,
        }
