"""Relational mirror storage (SQLAlchemy)."""
from .database import Database
from .models import (
    Base,
    ChunkRecord,
    ConflictResolution,
    DocumentRecord,
    EntityRecord,
    EntityType,
    RelationshipRecord,
    SyncDirection,
    SyncLogEntry,
    SyncStatus,
)
from .repository import MirrorRepository

__all__ = [
    "Database",
    "MirrorRepository",
    "Base",
    "ChunkRecord",
    "ConflictResolution",
    "DocumentRecord",
    "EntityRecord",
    "EntityType",
    "RelationshipRecord",
    "SyncDirection",
    "SyncLogEntry",
    "SyncStatus",
]
