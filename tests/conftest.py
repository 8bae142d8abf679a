"""
Shared fixtures
===============

Store collaborators are faked with MagicMock; the relational side runs on an
in-memory SQLite engine so repository and sync tests exercise real SQL.
"""
import os

# Must be set before config is imported anywhere
os.environ.setdefault("LOG_FILE", "")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from config.settings import Settings
from graph.connection import Neo4jConnection
from graph.records import GraphNode, GraphPath, GraphRelationship, GraphScalar, PathSegment
from routing.router import HealthSnapshot, StoreHealth
from storage.database import Database
from storage.models import ChunkRecord, DocumentRecord, EntityRecord, RelationshipRecord
from storage.repository import MirrorRepository


@pytest.fixture
def test_settings():
    """Settings with small, predictable limits."""
    return Settings(
        log_file="",
        max_traversal_depth=3,
        max_result_limit=100,
        sync_batch_size=100,
        default_similarity_threshold=0.5,
    )


@pytest.fixture
def mock_connection():
    """Neo4jConnection whose ``run`` returns no records unless told otherwise."""
    connection = MagicMock(spec=Neo4jConnection)
    connection.run.return_value = []
    return connection


@pytest.fixture
def database(test_settings):
    """Fresh in-memory relational store with all tables created."""
    db = Database("sqlite://", config=test_settings).open()
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def repository(database):
    return MirrorRepository(database)


@pytest.fixture
def healthy_snapshot():
    now = datetime.now(timezone.utc)
    return HealthSnapshot(
        postgres=StoreHealth(healthy=True, latency_ms=5.0, checked_at=now),
        neo4j=StoreHealth(healthy=True, latency_ms=12.0, checked_at=now),
    )


# ----------------------------------------------------------------------
# Builders
# ----------------------------------------------------------------------

def make_node(entity_id, centrality=0.0, labels=("Entity",), **properties):
    return GraphNode(
        id=f"4:db:{entity_id}",
        labels=tuple(labels),
        properties={"id": entity_id, "centralityScore": centrality, **properties},
    )


def make_path(*nodes, rel_type="RELATED_TO"):
    """Path through the given nodes, one relationship per hop."""
    segments = tuple(
        PathSegment(
            start=start,
            relationship=GraphRelationship(
                id=f"5:db:{start.get('id')}-{end.get('id')}",
                type=rel_type,
                start_node_id=start.id,
                end_node_id=end.id,
            ),
            end=end,
        )
        for start, end in zip(nodes, nodes[1:])
    )
    return GraphPath(start=nodes[0], end=nodes[-1], segments=segments)


def scalar(value):
    return GraphScalar(value=value)


def add_document(database, doc_id, created_offset=0, version=1, **fields):
    created = datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=created_offset)
    with database.session() as session:
        session.add(DocumentRecord(
            id=doc_id,
            title=fields.get("title", f"Document {doc_id}"),
            content=fields.get("content", f"content of {doc_id}"),
            content_hash=fields.get("content_hash", f"hash-{doc_id}"),
            source=fields.get("source"),
            extra_metadata=fields.get("metadata", {}),
            version=version,
            sync_version=fields.get("sync_version", 0),
            graph_node_id=fields.get("graph_node_id"),
            created_at=created,
        ))


def add_chunk(database, chunk_id, document_id, index=0, version=1):
    with database.session() as session:
        session.add(ChunkRecord(
            id=chunk_id,
            document_id=document_id,
            content=f"chunk {index} of {document_id}",
            chunk_index=index,
            start_offset=index * 100,
            end_offset=index * 100 + 99,
            embedding=[0.1, 0.2, 0.3],
            version=version,
        ))


def add_entity(database, entity_id, name=None, version=1, **fields):
    with database.session() as session:
        session.add(EntityRecord(
            entity_id=entity_id,
            entity_type=fields.get("entity_type", "concept"),
            entity_name=name or entity_id.title(),
            centrality_score=fields.get("centrality_score"),
            extra_metadata=fields.get("metadata", {}),
            version=version,
            sync_version=fields.get("sync_version", 0),
            graph_node_id=fields.get("graph_node_id"),
        ))


def add_relationship(database, source, target, rel_type="RELATED_TO", version=1, created_offset=0):
    created = datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=created_offset)
    with database.session() as session:
        session.add(RelationshipRecord(
            source_entity_id=source,
            target_entity_id=target,
            relationship_type=rel_type,
            relationship_strength=0.8,
            version=version,
            created_at=created,
        ))
