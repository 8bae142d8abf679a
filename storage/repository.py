"""Narrow query/command interface over the relational mirror tables."""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger
from sqlalchemy import case, func, or_, select

from .database import Database
from .models import (
    MIRRORED_MODELS,
    EntityRecord,
    EntityType,
    RelationshipRecord,
    SyncLogEntry,
    SyncStatus,
    utcnow,
)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class MirrorRepository:
    """
    Reads pending mirror rows, stamps cross-references and appends to the
    sync log. Every method runs in its own scoped session.
    """

    def __init__(self, database: Database):
        self.logger = logger.bind(name=self.__class__.__name__)
        self.database = database

    @staticmethod
    def _model(entity_type: EntityType):
        return MIRRORED_MODELS[EntityType(entity_type)]

    @staticmethod
    def _foreign_id(model):
        return model.graph_relationship_id if model is RelationshipRecord else model.graph_node_id

    def _unsynced_clause(self, model):
        return or_(self._foreign_id(model).is_(None), model.sync_version < model.version)

    def pending(self, entity_type: EntityType, limit: int) -> List[Dict[str, Any]]:
        """
        Rows whose graph mirror is missing or behind.

        Rows that never failed come first, oldest first. Rows that failed
        before follow, least recently failed first, so a row that keeps
        failing cannot hold back the rest of the table.
        """
        model = self._model(entity_type)
        with self.database.session() as session:
            stmt = (
                select(model)
                .where(self._unsynced_clause(model))
                .order_by(
                    case((model.last_failed_at.is_(None), 0), else_=1),
                    model.last_failed_at,
                    model.created_at,
                    model.id,
                )
                .limit(limit)
            )
            return [row.to_dict() for row in session.scalars(stmt)]

    def mark_synced(self, entity_type: EntityType, row_id: str, foreign_id: str, version: int) -> datetime:
        """Stamp the cross-reference and timestamp; sync_version only moves forward."""
        model = self._model(entity_type)
        with self.database.session() as session:
            row = session.get(model, row_id)
            if row is None:
                raise LookupError(f"{EntityType(entity_type).value} {row_id} no longer exists")
            if model is RelationshipRecord:
                row.graph_relationship_id = foreign_id
            else:
                row.graph_node_id = foreign_id
            row.sync_version = max(row.sync_version or 0, version)
            row.last_synced_at = utcnow()
            row.last_failed_at = None
            return row.last_synced_at

    def mark_failed(self, entity_type: EntityType, row_id: str) -> Optional[datetime]:
        """Stamp a failed propagation attempt; None when the row is gone."""
        model = self._model(entity_type)
        with self.database.session() as session:
            row = session.get(model, row_id)
            if row is None:
                return None
            row.last_failed_at = utcnow()
            return row.last_failed_at

    def upsert_entity_from_graph(
        self,
        entity_id: str,
        entity_name: str,
        entity_type: str,
        graph_node_id: str,
        version: int,
        metadata: Optional[Dict[str, Any]] = None,
        embedding: Optional[List[float]] = None,
        centrality_score: Optional[float] = None,
    ) -> Tuple[str, bool]:
        """
        Mirror a graph-native entity into the relational store.

        Returns:
            (row id, applied). ``applied`` is False when the relational row
            already holds a newer version; only the cross-reference is stamped.
        """
        with self.database.session() as session:
            row = session.scalars(select(EntityRecord).where(EntityRecord.entity_id == entity_id)).first()
            if row is None:
                row = EntityRecord(entity_id=entity_id, version=version, sync_version=0)
                session.add(row)
            applied = version >= (row.version or 0)
            if applied:
                row.entity_name = entity_name
                row.entity_type = entity_type
                row.extra_metadata = metadata or {}
                row.embedding = embedding
                row.centrality_score = centrality_score
                row.version = version
                row.sync_version = max(row.sync_version or 0, version)
            row.graph_node_id = graph_node_id
            row.last_synced_at = utcnow()
            row.last_failed_at = None
            session.flush()
            return row.id, applied

    def upsert_relationship_from_graph(
        self,
        source_entity_id: str,
        target_entity_id: str,
        relationship_type: str,
        graph_relationship_id: str,
        version: int,
        strength: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Tuple[str, bool]:
        """Mirror a graph-native relationship; same contract as upsert_entity_from_graph."""
        with self.database.session() as session:
            row = session.scalars(
                select(RelationshipRecord).where(
                    or_(
                        RelationshipRecord.graph_relationship_id == graph_relationship_id,
                        (RelationshipRecord.source_entity_id == source_entity_id)
                        & (RelationshipRecord.target_entity_id == target_entity_id)
                        & (RelationshipRecord.relationship_type == relationship_type),
                    )
                )
            ).first()
            if row is None:
                row = RelationshipRecord(
                    source_entity_id=source_entity_id,
                    target_entity_id=target_entity_id,
                    relationship_type=relationship_type,
                    version=version,
                    sync_version=0,
                )
                session.add(row)
            applied = version >= (row.version or 0)
            if applied:
                row.relationship_strength = 1.0 if strength is None else strength
                row.extra_metadata = metadata or {}
                row.version = version
                row.sync_version = max(row.sync_version or 0, version)
            row.graph_relationship_id = graph_relationship_id
            row.last_synced_at = utcnow()
            row.last_failed_at = None
            session.flush()
            return row.id, applied

    def get_entity(self, entity_id: str) -> Optional[Dict[str, Any]]:
        with self.database.session() as session:
            row = session.scalars(select(EntityRecord).where(EntityRecord.entity_id == entity_id)).first()
            return row.to_dict() if row else None

    # ------------------------------------------------------------------
    # Sync log
    # ------------------------------------------------------------------

    def append_sync_log(
        self,
        operation: str,
        entity_type: str,
        entity_id: str,
        direction: str,
        status: SyncStatus,
        error_message: Optional[str] = None,
        conflict_resolution: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Append one immutable audit entry in its own transaction."""
        now = utcnow()
        entry = SyncLogEntry(
            operation=operation,
            entity_type=entity_type,
            entity_id=entity_id,
            direction=direction,
            status=SyncStatus(status).value,
            error_message=error_message,
            conflict_resolution=conflict_resolution,
            payload=payload,
            created_at=now,
            processed_at=None if status == SyncStatus.PENDING else now,
        )
        with self.database.session() as session:
            session.add(entry)
            session.flush()
            return entry.id

    def recent_log(self, limit: int = 50, entity_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self.database.session() as session:
            stmt = select(SyncLogEntry)
            if entity_id:
                stmt = stmt.where(SyncLogEntry.entity_id == entity_id)
            stmt = stmt.order_by(SyncLogEntry.created_at.desc()).limit(limit)
            return [entry.to_dict() for entry in session.scalars(stmt)]

    def count_log_entries(self, status: Optional[SyncStatus] = None) -> int:
        with self.database.session() as session:
            stmt = select(func.count()).select_from(SyncLogEntry)
            if status is not None:
                stmt = stmt.where(SyncLogEntry.status == SyncStatus(status).value)
            return session.scalar(stmt) or 0

    def last_successful_sync(self) -> Optional[datetime]:
        with self.database.session() as session:
            value = session.scalar(
                select(func.max(SyncLogEntry.created_at)).where(
                    SyncLogEntry.operation == "sync_completed",
                    SyncLogEntry.status == SyncStatus.SUCCESS.value,
                )
            )
            return _as_utc(value)

    def count_unsynced(self, entity_type: EntityType) -> int:
        model = self._model(entity_type)
        with self.database.session() as session:
            return session.scalar(
                select(func.count()).select_from(model).where(self._unsynced_clause(model))
            ) or 0
