"""Neo4j graph execution layer: traversal, analytics, health and mirror writes."""
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from loguru import logger

from config.settings import Settings, settings as default_settings
from core.errors import GraphQueryError, UnsupportedOperationError, ValidationError
from routing.router import StoreHealth
from .connection import Neo4jConnection
from .records import (
    GraphNode,
    GraphQueryResult,
    GraphRelationship,
    ValueKind,
    nodes_in,
    relationships_in,
    unwrap,
)

IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class AnalyticsAlgorithm(str, Enum):
    """Named GDS algorithms the layer can dispatch to."""
    PAGERANK = "pagerank"
    CENTRALITY = "centrality"
    COMMUNITY_DETECTION = "community_detection"
    SHORTEST_PATH = "shortest_path"

    @classmethod
    def parse(cls, name: str) -> "AnalyticsAlgorithm":
        """Accepts snake_case or camelCase names."""
        normalized = re.sub(r"(?<!^)(?=[A-Z])", "_", (name or "").strip()).lower()
        try:
            return cls(normalized)
        except ValueError:
            raise UnsupportedOperationError(f"Unsupported analytics algorithm: {name}") from None


ANALYTICS_QUERIES = {
    AnalyticsAlgorithm.PAGERANK: """
        CALL gds.pageRank.stream($graphName)
        YIELD nodeId, score
        WITH gds.util.asNode(nodeId) AS n, score
        RETURN n, score
        ORDER BY score DESC, n.id ASC
        LIMIT $limit
    """,
    AnalyticsAlgorithm.CENTRALITY: """
        CALL gds.betweenness.stream($graphName)
        YIELD nodeId, score
        WITH gds.util.asNode(nodeId) AS n, score
        RETURN n, score
        ORDER BY score DESC, n.id ASC
        LIMIT $limit
    """,
    AnalyticsAlgorithm.COMMUNITY_DETECTION: """
        CALL gds.louvain.stream($graphName)
        YIELD nodeId, communityId
        WITH gds.util.asNode(nodeId) AS n, communityId
        RETURN n, communityId
        ORDER BY communityId ASC, n.id ASC
        LIMIT $limit
    """,
    AnalyticsAlgorithm.SHORTEST_PATH: """
        MATCH (source:Entity {id: $startNodeId}), (target:Entity {id: $endNodeId})
        CALL gds.shortestPath.dijkstra.stream($graphName, {sourceNode: source, targetNode: target})
        YIELD path, totalCost
        RETURN path, totalCost
        LIMIT $limit
    """,
}

SCHEMA_STATEMENTS = [
    # Entity
    "CREATE CONSTRAINT entity_id_unique IF NOT EXISTS FOR (e:Entity) REQUIRE e.id IS UNIQUE",
    "CREATE INDEX entity_type_idx IF NOT EXISTS FOR (e:Entity) ON (e.entityType)",
    "CREATE INDEX entity_centrality_idx IF NOT EXISTS FOR (e:Entity) ON (e.centralityScore)",
    # Document
    "CREATE CONSTRAINT document_id_unique IF NOT EXISTS FOR (d:Document) REQUIRE d.id IS UNIQUE",
    "CREATE INDEX document_content_hash_idx IF NOT EXISTS FOR (d:Document) ON (d.contentHash)",
    # Chunk
    "CREATE CONSTRAINT chunk_id_unique IF NOT EXISTS FOR (c:Chunk) REQUIRE c.id IS UNIQUE",
    "CREATE INDEX chunk_document_idx IF NOT EXISTS FOR (c:Chunk) ON (c.documentId)",
]

# Applied only when the node is not ahead of the incoming version, so
# syncVersion never decreases on the graph side.
_GUARDED_SET = """
    FOREACH (_ IN CASE WHEN previousVersion <= $syncVersion THEN [1] ELSE [] END |
        SET {var} += $properties,
            {var}.version = $syncVersion,
            {var}.syncVersion = $syncVersion,
            {var}.lastSyncedAt = datetime(),
            {var}.lastUpdated = datetime()
        {extra}
    )
"""


@dataclass(frozen=True)
class MirrorWrite:
    """Outcome of writing one mirrored item into the graph."""
    native_id: str
    previous_version: int
    applied: bool


class Neo4jStore:
    """
    Graph execution layer over a Neo4jConnection.

    All operations are parameterized and bounds-checked before anything is
    sent to the store. Traversal depth and result limits are capped at the
    configured ceilings regardless of what the caller asks for.
    """

    def __init__(self, connection: Neo4jConnection, config: Optional[Settings] = None):
        self.logger = logger.bind(name=self.__class__.__name__)
        self.connection = connection
        self.settings = config or default_settings

    @staticmethod
    def _is_primitive(value: Any) -> bool:
        """Check if a value is a primitive type (string, int, float, bool) or list of primitives."""
        if value is None:
            return True
        if isinstance(value, (str, int, float, bool)):
            return True
        if isinstance(value, list):
            return all(Neo4jStore._is_primitive(item) for item in value)
        return False

    @staticmethod
    def _flatten_metadata(metadata: Optional[Dict]) -> Dict[str, Any]:
        """
        Flatten metadata dictionary to only include primitive values.
        Neo4j only accepts primitive types (string, int, float, bool) or arrays of primitives.
        """
        if not isinstance(metadata, dict):
            return {}

        flattened = {}
        for key, value in metadata.items():
            if not IDENTIFIER.match(str(key)) or value is None:
                continue
            if Neo4jStore._is_primitive(value):
                flattened[key] = value
            # Convert lists with mixed types to lists of strings
            elif isinstance(value, list):
                flattened[key] = [str(item) for item in value]

        return flattened

    @staticmethod
    def _identifiers(values: Optional[Sequence[str]], what: str) -> List[str]:
        """Validate labels/relationship types before they are interpolated into Cypher."""
        checked = []
        for value in values or []:
            if not isinstance(value, str) or not IDENTIFIER.match(value):
                raise ValidationError(f"Invalid {what}: {value!r}")
            checked.append(value)
        return checked

    def _bounded_limit(self, limit: int) -> int:
        if not isinstance(limit, int) or limit <= 0:
            raise ValidationError(f"limit must be a positive integer, got {limit!r}")
        return min(limit, self.settings.max_result_limit)

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def ensure_schema(self) -> List[str]:
        """
        Create uniqueness constraints and lookup indexes.

        Statements are independent; a failing one is logged and skipped.

        Returns:
            The statements that succeeded
        """
        applied = []
        for statement in SCHEMA_STATEMENTS:
            try:
                self.connection.run(statement)
                applied.append(statement)
            except Exception as e:
                self.logger.warning(f"Failed to create index/constraint ({statement}): {e}")

        self.logger.info(f"Neo4j schema ensured ({len(applied)}/{len(SCHEMA_STATEMENTS)} statements applied)")
        return applied

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def traverse(
        self,
        start_entity_id: str,
        max_depth: int = 3,
        relationship_types: Optional[Sequence[str]] = None,
        node_labels: Optional[Sequence[str]] = None,
        limit: int = 100,
    ) -> GraphQueryResult:
        """
        Bounded multi-hop traversal from a starting entity.

        Paths come back ordered by length ascending, then by the terminal
        node's centrality descending (terminal id breaks remaining ties).

        Args:
            start_entity_id: ``id`` property of the starting Entity node
            max_depth: Requested depth, clamped to ``max_traversal_depth``
            relationship_types: Optional relationship type filter
            node_labels: Optional label filter for the terminal node
            limit: Maximum number of paths, clamped to ``max_result_limit``
        """
        if not start_entity_id:
            raise ValidationError("start_entity_id is required")
        if not isinstance(max_depth, int) or max_depth < 1:
            raise ValidationError(f"max_depth must be >= 1, got {max_depth!r}")
        rel_types = self._identifiers(relationship_types, "relationship type")
        labels = self._identifiers(node_labels, "node label")
        effective_limit = self._bounded_limit(limit)
        effective_depth = min(max_depth, self.settings.max_traversal_depth)
        if effective_depth < max_depth:
            self.logger.debug(f"Clamped traversal depth {max_depth} -> {effective_depth}")

        rel_filter = f":{'|'.join(rel_types)}" if rel_types else ""
        node_filter = f":{'|'.join(labels)}" if labels else ""
        query = f"""
        MATCH path = (start:Entity {{id: $startEntityId}})-[{rel_filter}*1..{effective_depth}]-(end{node_filter})
        WITH path, end, length(path) AS pathLength
        ORDER BY pathLength ASC, coalesce(end.centralityScore, 0.0) DESC, end.id ASC
        LIMIT $limit
        RETURN path, pathLength
        """

        started = time.perf_counter()
        records = self.connection.run(query, {"startEntityId": start_entity_id, "limit": effective_limit})
        elapsed_ms = (time.perf_counter() - started) * 1000

        paths = [r["path"] for r in records if r["path"].kind == ValueKind.PATH]
        paths.sort(key=lambda p: (p.length, -p.end.centrality, str(p.end.get("id", p.end.id))))
        paths = paths[:effective_limit]

        nodes = [node for path in paths for node in path.nodes]
        relationships = [rel for path in paths for rel in path.relationships]

        self.logger.info(f"Traversal from {start_entity_id} returned {len(paths)} paths")
        return GraphQueryResult(
            query=query,
            parameters={
                "start_entity_id": start_entity_id,
                "max_depth": max_depth,
                "relationship_types": rel_types,
                "node_labels": labels,
                "limit": limit,
            },
            result_count=len(paths),
            execution_time_ms=elapsed_ms,
            paths=paths,
            nodes=nodes,
            relationships=relationships,
            metadata={
                "max_depth_reached": max((p.length for p in paths), default=0),
                "requested_depth": max_depth,
                "effective_depth": effective_depth,
                "effective_limit": effective_limit,
                "unique_nodes": len({n.id for n in nodes}),
                "unique_relationships": len({r.id for r in relationships}),
            },
        )

    # ------------------------------------------------------------------
    # Similarity
    # ------------------------------------------------------------------

    def _has_vector_index(self) -> bool:
        try:
            records = self.connection.run("SHOW INDEXES YIELD name, type RETURN name, type")
        except Exception as e:
            self.logger.debug(f"Could not list indexes, assuming no vector index: {e}")
            return False
        return any(
            unwrap(r["name"]) == self.settings.neo4j_vector_index and unwrap(r["type"]) == "VECTOR"
            for r in records
        )

    def find_similar_entities(
        self,
        embedding: Sequence[float],
        limit: int = 10,
        threshold: float = 0.7,
    ) -> GraphQueryResult:
        """
        Entities similar to an embedding.

        Uses the native vector index when it exists. Otherwise entities with
        an embedding are ranked by centrality instead, and the result is
        flagged as an approximation.
        """
        if not embedding:
            raise ValidationError("embedding must be a non-empty vector")
        if not 0.0 <= threshold <= 1.0:
            raise ValidationError(f"threshold must be within [0, 1], got {threshold!r}")
        effective_limit = self._bounded_limit(limit)
        vector = [float(x) for x in embedding]

        if self._has_vector_index():
            query = """
            CALL db.index.vector.queryNodes($indexName, $limit, $embedding)
            YIELD node, score
            WHERE score >= $threshold
            RETURN node, score
            ORDER BY score DESC
            """
            params = {
                "indexName": self.settings.neo4j_vector_index,
                "limit": effective_limit,
                "embedding": vector,
                "threshold": threshold,
            }
            approximate = False
            reasoning = f"Nearest neighbours from vector index {self.settings.neo4j_vector_index}"
        else:
            query = """
            MATCH (e:Entity)
            WHERE e.embedding IS NOT NULL
            RETURN e AS node, coalesce(e.centralityScore, 0.0) AS score
            ORDER BY score DESC, e.id ASC
            LIMIT $limit
            """
            params = {"limit": effective_limit}
            approximate = True
            reasoning = (
                "Graph store has no vector index; entities ranked by centrality score, "
                "this is an approximation and not a nearest-neighbour search"
            )
            self.logger.warning("Similarity fallback: ranking entities by centrality")

        started = time.perf_counter()
        records = self.connection.run(query, params)
        elapsed_ms = (time.perf_counter() - started) * 1000

        nodes = [r["node"] for r in records if r["node"].kind == ValueKind.NODE]
        scores = [
            {"node_id": r["node"].id, "entity_id": r["node"].get("id"), "score": unwrap(r["score"])}
            for r in records if r["node"].kind == ValueKind.NODE
        ]
        return GraphQueryResult(
            query=query,
            parameters={"limit": limit, "threshold": threshold, "dimensions": len(vector)},
            result_count=len(nodes),
            execution_time_ms=elapsed_ms,
            nodes=nodes,
            metadata={
                "approximate": approximate,
                "method": "centrality" if approximate else "vector_index",
                "scores": scores,
            },
            reasoning=reasoning,
        )

    def lookup_entity(self, entity_id: str) -> Optional[GraphNode]:
        """Fetch a single Entity node by its id."""
        if not entity_id:
            raise ValidationError("entity_id is required")
        records = self.connection.run("MATCH (e:Entity {id: $id}) RETURN e LIMIT 1", {"id": entity_id})
        if not records:
            return None
        node = records[0]["e"]
        return node if node.kind == ValueKind.NODE else None

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    def run_analytics(
        self,
        algorithm: str,
        parameters: Optional[Dict[str, Any]] = None,
        limit: int = 100,
    ) -> GraphQueryResult:
        """
        Dispatch a named graph algorithm (Neo4j GDS) and wrap its output.

        Raises:
            UnsupportedOperationError: unknown algorithm name
            ValidationError: shortest_path without startNodeId/endNodeId
        """
        algo = AnalyticsAlgorithm.parse(algorithm)
        parameters = dict(parameters or {})
        if algo == AnalyticsAlgorithm.SHORTEST_PATH and (
            not parameters.get("startNodeId") or not parameters.get("endNodeId")
        ):
            raise ValidationError("Shortest path requires startNodeId and endNodeId parameters")
        effective_limit = self._bounded_limit(limit)

        query = ANALYTICS_QUERIES[algo]
        run_params = {**parameters, "graphName": self.settings.gds_graph_name, "limit": effective_limit}

        started = time.perf_counter()
        records = self.connection.run(query, run_params)
        elapsed_ms = (time.perf_counter() - started) * 1000

        metadata: Dict[str, Any] = {
            "algorithm": algo.value,
            "graph_name": self.settings.gds_graph_name,
            **parameters,
        }
        paths, nodes, relationships = [], [], []

        if algo == AnalyticsAlgorithm.SHORTEST_PATH:
            paths = [r["path"] for r in records if r["path"].kind == ValueKind.PATH]
            nodes = [node for path in paths for node in nodes_in(path)]
            relationships = [rel for path in paths for rel in relationships_in(path)]
            metadata["total_costs"] = [unwrap(r["totalCost"]) for r in records]
            result_count = len(paths)
        else:
            value_key = "communityId" if algo == AnalyticsAlgorithm.COMMUNITY_DETECTION else "score"
            rows = [r for r in records if r["n"].kind == ValueKind.NODE]
            nodes = [r["n"] for r in rows]
            entries = [
                {"node_id": r["n"].id, "entity_id": r["n"].get("id"), value_key: unwrap(r[value_key])}
                for r in rows
            ]
            metadata["communities" if value_key == "communityId" else "scores"] = entries
            result_count = len(nodes)

        self.logger.info(f"Analytics {algo.value} returned {result_count} results")
        return GraphQueryResult(
            query=query,
            parameters=parameters,
            result_count=result_count,
            execution_time_ms=elapsed_ms,
            paths=paths,
            nodes=nodes,
            relationships=relationships,
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def check_health(self) -> StoreHealth:
        """Bounded-cost structural probe. Never raises."""
        started = time.perf_counter()
        try:
            records = self.connection.run(
                """
                CALL db.labels() YIELD label
                WITH collect(label) AS labels
                CALL { MATCH (n) RETURN count(n) AS nodeCount }
                CALL { MATCH ()-[r]->() RETURN count(r) AS relationshipCount }
                RETURN labels, nodeCount, relationshipCount
                """
            )
            latency_ms = (time.perf_counter() - started) * 1000
            row = records[0] if records else {}
            labels = row.get("labels")
            return StoreHealth(
                healthy=True,
                latency_ms=latency_ms,
                checked_at=datetime.now(timezone.utc),
                details={
                    "node_count": unwrap(row["nodeCount"]) if "nodeCount" in row else 0,
                    "relationship_count": unwrap(row["relationshipCount"]) if "relationshipCount" in row else 0,
                    "labels": [unwrap(label) for label in labels.items] if labels is not None and labels.kind == ValueKind.LIST else [],
                },
            )
        except Exception as e:
            self.logger.warning(f"Neo4j health check failed: {e}")
            return StoreHealth(
                healthy=False,
                latency_ms=-1,
                error=str(e) or e.__class__.__name__,
                checked_at=datetime.now(timezone.utc),
            )

    # ------------------------------------------------------------------
    # Mirror writes (used by the sync coordinator)
    # ------------------------------------------------------------------

    def _write(self, query: str, params: Dict[str, Any], id_key: str, missing: str) -> MirrorWrite:
        records = self.connection.run(query, params)
        if not records:
            raise GraphQueryError(missing)
        previous = unwrap(records[0]["previousVersion"]) or 0
        return MirrorWrite(
            native_id=unwrap(records[0][id_key]),
            previous_version=int(previous),
            applied=previous <= params["syncVersion"],
        )

    def upsert_document(self, document_id: str, properties: Dict[str, Any], sync_version: int) -> MirrorWrite:
        """Create or update a Document node."""
        query = """
        MERGE (d:Document {id: $id})
        WITH d, coalesce(d.version, d.syncVersion, 0) AS previousVersion
        """ + _GUARDED_SET.format(var="d", extra="") + """
        RETURN elementId(d) AS nodeId, previousVersion
        """
        params = {"id": document_id, "properties": self._flatten_metadata(properties), "syncVersion": sync_version}
        return self._write(query, params, "nodeId", f"Document {document_id} could not be written")

    def upsert_chunk(self, chunk_id: str, document_id: str, properties: Dict[str, Any], sync_version: int) -> MirrorWrite:
        """Create or update a Chunk node and link it to its Document."""
        query = """
        MATCH (d:Document {id: $documentId})
        MERGE (c:Chunk {id: $id})
        WITH d, c, coalesce(c.version, c.syncVersion, 0) AS previousVersion
        """ + _GUARDED_SET.format(var="c", extra="MERGE (d)-[:CONTAINS]->(c)") + """
        RETURN elementId(c) AS nodeId, previousVersion
        """
        props = {**self._flatten_metadata(properties), "documentId": document_id}
        params = {"id": chunk_id, "documentId": document_id, "properties": props, "syncVersion": sync_version}
        return self._write(query, params, "nodeId", f"Document {document_id} of chunk {chunk_id} is not mirrored yet")

    def upsert_entity(self, entity_id: str, properties: Dict[str, Any], sync_version: int) -> MirrorWrite:
        """Create or update an Entity node."""
        query = """
        MERGE (e:Entity {id: $id})
        WITH e, coalesce(e.version, e.syncVersion, 0) AS previousVersion
        """ + _GUARDED_SET.format(var="e", extra="") + """
        RETURN elementId(e) AS nodeId, previousVersion
        """
        params = {"id": entity_id, "properties": self._flatten_metadata(properties), "syncVersion": sync_version}
        return self._write(query, params, "nodeId", f"Entity {entity_id} could not be written")

    def upsert_relationship(
        self,
        source_entity_id: str,
        target_entity_id: str,
        relationship_type: str,
        properties: Dict[str, Any],
        sync_version: int,
    ) -> MirrorWrite:
        """Create or update a relationship between two mirrored entities."""
        rel_type = self._identifiers([relationship_type], "relationship type")[0]
        query = f"""
        MATCH (source:Entity {{id: $sourceId}})
        MATCH (target:Entity {{id: $targetId}})
        MERGE (source)-[r:`{rel_type}`]->(target)
        WITH r, coalesce(r.version, r.syncVersion, 0) AS previousVersion
        """ + _GUARDED_SET.format(var="r", extra="") + """
        RETURN elementId(r) AS relationshipId, previousVersion
        """
        params = {
            "sourceId": source_entity_id,
            "targetId": target_entity_id,
            "properties": self._flatten_metadata(properties),
            "syncVersion": sync_version,
        }
        return self._write(
            query, params, "relationshipId",
            f"Endpoints {source_entity_id} -> {target_entity_id} are not mirrored yet",
        )

    def find_unmirrored_entities(self, limit: int) -> List[GraphNode]:
        """Graph-native Entity nodes whose relational mirror is missing or stale."""
        records = self.connection.run(
            """
            MATCH (e:Entity)
            WHERE e.syncVersion IS NULL OR coalesce(e.version, 0) > e.syncVersion
            RETURN e
            ORDER BY e.id ASC
            LIMIT $limit
            """,
            {"limit": self._bounded_limit(limit)},
        )
        return [r["e"] for r in records if r["e"].kind == ValueKind.NODE]

    def find_unmirrored_relationships(self, limit: int) -> List[Tuple[GraphRelationship, str, str]]:
        """Graph-native entity relationships whose relational mirror is missing or stale."""
        records = self.connection.run(
            """
            MATCH (a:Entity)-[r]->(b:Entity)
            WHERE r.syncVersion IS NULL OR coalesce(r.version, 0) > r.syncVersion
            RETURN r, a.id AS sourceId, b.id AS targetId
            ORDER BY elementId(r) ASC
            LIMIT $limit
            """,
            {"limit": self._bounded_limit(limit)},
        )
        return [
            (r["r"], unwrap(r["sourceId"]), unwrap(r["targetId"]))
            for r in records if r["r"].kind == ValueKind.RELATIONSHIP
        ]

    def mark_mirrored(self, element_id: str, version: int, relationship: bool = False):
        """Stamp a graph item as mirrored at ``version`` (never lowering syncVersion)."""
        pattern = "MATCH ()-[n]->()" if relationship else "MATCH (n)"
        self.connection.run(
            pattern + """
            WHERE elementId(n) = $elementId
            SET n.syncVersion = CASE WHEN coalesce(n.syncVersion, 0) > $version THEN n.syncVersion ELSE $version END,
                n.lastSyncedAt = datetime()
            """,
            {"elementId": element_id, "version": version},
        )
