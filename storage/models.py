"""
Relational mirror tables
========================

SQLAlchemy models for the relational side of the dual store: documents,
chunks, knowledge-graph entities and relationships, each carrying the
cross-reference to its graph mirror, plus the append-only sync log.

Mirror bookkeeping on every row:
- ``graph_node_id`` / ``graph_relationship_id``: native id of the graph mirror
- ``version``: bumped by writers whenever the row changes
- ``sync_version``: the version last propagated; never decreases
- ``last_synced_at``: when the mirror was last written
- ``last_failed_at``: last failed propagation, cleared once the mirror is written
"""
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def new_id() -> str:
    return str(uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntityType(str, Enum):
    DOCUMENT = "document"
    CHUNK = "chunk"
    ENTITY = "entity"
    RELATIONSHIP = "relationship"


class SyncDirection(str, Enum):
    POSTGRES_TO_NEO4J = "postgres_to_neo4j"
    NEO4J_TO_POSTGRES = "neo4j_to_postgres"
    BIDIRECTIONAL = "bidirectional"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    CONFLICT = "conflict"


class ConflictResolution(str, Enum):
    SOURCE_WINS = "source_wins"
    TARGET_WINS = "target_wins"
    MERGE = "merge"
    MANUAL = "manual"


class MirrorMixin:
    """Sync bookkeeping shared by every mirrored table."""
    version = Column(Integer, nullable=False, default=1)
    sync_version = Column(Integer, nullable=False, default=0)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    last_failed_at = Column(DateTime(timezone=True), nullable=True)

    def mirror_dict(self) -> dict:
        return {
            "version": self.version,
            "sync_version": self.sync_version,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "last_failed_at": self.last_failed_at.isoformat() if self.last_failed_at else None,
        }


class DocumentRecord(MirrorMixin, Base):
    __tablename__ = "documents"

    id = Column(String(36), primary_key=True, default=new_id)
    title = Column(Text, nullable=False)
    content = Column(Text, nullable=False)
    content_hash = Column(String(128), nullable=False, unique=True, index=True)
    source = Column(Text, nullable=True)
    extra_metadata = Column("metadata", JSON, nullable=True)
    graph_node_id = Column(String(100), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "content_hash": self.content_hash,
            "source": self.source,
            "metadata": self.extra_metadata or {},
            "graph_node_id": self.graph_node_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            **self.mirror_dict(),
        }


class ChunkRecord(MirrorMixin, Base):
    __tablename__ = "document_chunks"

    id = Column(String(36), primary_key=True, default=new_id)
    document_id = Column(String(36), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    chunk_index = Column(Integer, nullable=False)
    start_offset = Column(Integer, nullable=False, default=0)
    end_offset = Column(Integer, nullable=False, default=0)
    embedding = Column(JSON, nullable=True)
    extra_metadata = Column("metadata", JSON, nullable=True)
    graph_node_id = Column(String(100), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "content": self.content,
            "chunk_index": self.chunk_index,
            "start_offset": self.start_offset,
            "end_offset": self.end_offset,
            "embedding": self.embedding,
            "metadata": self.extra_metadata or {},
            "graph_node_id": self.graph_node_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            **self.mirror_dict(),
        }


class EntityRecord(MirrorMixin, Base):
    __tablename__ = "knowledge_graph"

    id = Column(String(36), primary_key=True, default=new_id)
    entity_id = Column(String(255), nullable=False, unique=True, index=True)
    entity_type = Column(String(50), nullable=False, index=True)
    entity_name = Column(Text, nullable=False)
    embedding = Column(JSON, nullable=True)
    centrality_score = Column(Float, nullable=True)
    extra_metadata = Column("metadata", JSON, nullable=True)
    graph_node_id = Column(String(100), nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_id": self.entity_id,
            "entity_type": self.entity_type,
            "entity_name": self.entity_name,
            "embedding": self.embedding,
            "centrality_score": self.centrality_score,
            "metadata": self.extra_metadata or {},
            "graph_node_id": self.graph_node_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            **self.mirror_dict(),
        }


class RelationshipRecord(MirrorMixin, Base):
    __tablename__ = "knowledge_graph_relations"
    __table_args__ = (
        UniqueConstraint("source_entity_id", "target_entity_id", "relationship_type", name="kg_relations_composite_key"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    source_entity_id = Column(String(255), ForeignKey("knowledge_graph.entity_id", ondelete="CASCADE"), nullable=False, index=True)
    target_entity_id = Column(String(255), ForeignKey("knowledge_graph.entity_id", ondelete="CASCADE"), nullable=False, index=True)
    relationship_type = Column(String(100), nullable=False, index=True)
    relationship_strength = Column(Float, nullable=True, default=1.0)
    extra_metadata = Column("metadata", JSON, nullable=True)
    graph_relationship_id = Column(String(100), nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source_entity_id": self.source_entity_id,
            "target_entity_id": self.target_entity_id,
            "relationship_type": self.relationship_type,
            "relationship_strength": self.relationship_strength,
            "metadata": self.extra_metadata or {},
            "graph_relationship_id": self.graph_relationship_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            **self.mirror_dict(),
        }


class SyncLogEntry(Base):
    """Append-only audit record, one row per attempted propagation."""
    __tablename__ = "database_sync_log"

    id = Column(String(36), primary_key=True, default=new_id)
    operation = Column(String(50), nullable=False)  # sync_started, propagate, sync_completed, ...
    entity_type = Column(String(50), nullable=False, index=True)
    entity_id = Column(String(255), nullable=False, index=True)
    direction = Column(String(50), nullable=False, index=True)
    status = Column(String(20), nullable=False, index=True)
    error_message = Column(Text, nullable=True)
    conflict_resolution = Column(String(20), nullable=True)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operation": self.operation,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "direction": self.direction,
            "status": self.status,
            "error_message": self.error_message,
            "conflict_resolution": self.conflict_resolution,
            "payload": self.payload,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }


MIRRORED_MODELS = {
    EntityType.DOCUMENT: DocumentRecord,
    EntityType.CHUNK: ChunkRecord,
    EntityType.ENTITY: EntityRecord,
    EntityType.RELATIONSHIP: RelationshipRecord,
}
