"""Keeps mirrored items consistent between the relational and graph stores."""
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from config.settings import Settings, settings as default_settings
from core.errors import PartialBatchFailure, ValidationError
from graph.neo4j_store import MirrorWrite, Neo4jStore
from storage.models import ConflictResolution, EntityType, SyncDirection, SyncStatus
from storage.repository import MirrorRepository


class SyncState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class SyncOptions:
    direction: SyncDirection = SyncDirection.POSTGRES_TO_NEO4J
    batch_size: Optional[int] = None
    dry_run: bool = False


@dataclass
class SyncResult:
    """Outcome of one sync run. Per-item failures are collected in ``errors``."""
    success: bool = False
    documents_processed: int = 0
    chunks_processed: int = 0
    entities_processed: int = 0
    relationships_processed: int = 0
    errors: List[str] = field(default_factory=list)
    execution_time_ms: float = 0.0
    dry_run: bool = False
    cancelled: bool = False

    @property
    def total_processed(self) -> int:
        return (
            self.documents_processed
            + self.chunks_processed
            + self.entities_processed
            + self.relationships_processed
        )

    def raise_for_errors(self):
        if self.errors:
            raise PartialBatchFailure(self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "documents_processed": self.documents_processed,
            "chunks_processed": self.chunks_processed,
            "entities_processed": self.entities_processed,
            "relationships_processed": self.relationships_processed,
            "errors": list(self.errors),
            "execution_time_ms": self.execution_time_ms,
            "dry_run": self.dry_run,
            "cancelled": self.cancelled,
        }


class _Cancelled(Exception):
    pass


_COUNTERS = {
    EntityType.DOCUMENT: "documents_processed",
    EntityType.CHUNK: "chunks_processed",
    EntityType.ENTITY: "entities_processed",
    EntityType.RELATIONSHIP: "relationships_processed",
}


class SyncCoordinator:
    """
    Propagates pending rows from one store to the other and records every
    attempt in the sync log.

    Runs are sequential. A second ``sync()`` while one is running returns a
    failed result immediately instead of waiting.
    """

    def __init__(
        self,
        repository: MirrorRepository,
        graph_store: Neo4jStore,
        config: Optional[Settings] = None,
    ):
        """
        Initialize sync coordinator.

        Args:
            repository: Relational mirror repository
            graph_store: Graph execution layer
            config: Settings override
        """
        self.logger = logger.bind(name=self.__class__.__name__)
        self.repository = repository
        self.graph_store = graph_store
        self.settings = config or default_settings
        self._state = SyncState.IDLE
        self._run_lock = threading.Lock()
        self._cancel = threading.Event()

    @property
    def state(self) -> SyncState:
        return self._state

    def cancel(self):
        """Stop the current run after the item in flight."""
        self._cancel.set()

    def sync(self, options: Optional[SyncOptions] = None) -> SyncResult:
        """
        Run one synchronization pass. Never raises.

        Args:
            options: Direction, batch size and dry-run flag; the direction
                defaults to the ``sync_direction`` setting

        Returns:
            SyncResult with per-type counts and collected errors. A
            cancelled run carries the cancellation in ``errors`` too, so
            ``success`` is true exactly when ``errors`` is empty.
        """
        result = SyncResult(dry_run=bool(options is not None and options.dry_run))

        if not self._run_lock.acquire(blocking=False):
            result.errors.append("sync already running")
            return result

        started = time.perf_counter()
        self._cancel.clear()
        self._state = SyncState.RUNNING
        direction: Any = options.direction if options is not None else self.settings.sync_direction
        try:
            options = options or SyncOptions(direction=SyncDirection(self.settings.sync_direction))
            direction = SyncDirection(options.direction)
            batch_size = self._batch_size(options.batch_size)
            self._log_event("sync_started", direction, SyncStatus.PENDING, payload={
                "batch_size": batch_size,
                "dry_run": options.dry_run,
            })

            if direction in (SyncDirection.POSTGRES_TO_NEO4J, SyncDirection.BIDIRECTIONAL):
                for entity_type in (EntityType.DOCUMENT, EntityType.CHUNK, EntityType.ENTITY, EntityType.RELATIONSHIP):
                    self._push(entity_type, batch_size, options.dry_run, result)
            if direction in (SyncDirection.NEO4J_TO_POSTGRES, SyncDirection.BIDIRECTIONAL):
                self._pull_entities(batch_size, options.dry_run, result)
                self._pull_relationships(batch_size, options.dry_run, result)
        except _Cancelled as e:
            result.cancelled = True
            result.errors.append(str(e))
            self.logger.warning(f"Run stopped: {e}")
        except Exception as e:
            self.logger.exception(f"Sync orchestration failed: {e}")
            result.errors.append(f"sync: {e}")
        finally:
            result.execution_time_ms = (time.perf_counter() - started) * 1000
            result.success = not result.errors
            self._state = SyncState.COMPLETED if result.success else SyncState.FAILED
            # a dry run must not count as the last successful sync
            if result.dry_run:
                operation = "dry_run_completed" if result.success else "dry_run_failed"
            else:
                operation = "sync_completed" if result.success else "sync_failed"
            self._log_event(
                operation,
                direction,
                SyncStatus.SUCCESS if result.success else SyncStatus.FAILED,
                error_message="; ".join(result.errors[:10]) or None,
                payload=result.to_dict(),
            )
            self._run_lock.release()

        self.logger.info(
            f"Sync finished in {result.execution_time_ms:.0f}ms: {result.total_processed} processed, "
            f"{len(result.errors)} errors{' (dry run)' if result.dry_run else ''}"
        )
        return result

    def _batch_size(self, requested: Optional[int]) -> int:
        if requested is None:
            return self.settings.sync_batch_size
        if not isinstance(requested, int) or requested <= 0:
            raise ValidationError(f"batch_size must be a positive integer, got {requested!r}")
        return min(requested, self.settings.sync_batch_size)

    def _check_cancelled(self, entity_type: EntityType, item_id: str):
        if self._cancel.is_set():
            raise _Cancelled(f"sync cancelled before {entity_type.value} {item_id}")

    # ------------------------------------------------------------------
    # postgres -> neo4j
    # ------------------------------------------------------------------

    def _push(self, entity_type: EntityType, batch_size: int, dry_run: bool, result: SyncResult):
        rows = self.repository.pending(entity_type, batch_size)
        if rows:
            self.logger.info(f"Propagating {len(rows)} {entity_type.value} rows to neo4j")
        write = self._writers()[entity_type]
        counter = _COUNTERS[entity_type]

        for row in rows:
            item_id = self._item_id(entity_type, row)
            self._check_cancelled(entity_type, item_id)
            setattr(result, counter, getattr(result, counter) + 1)
            if dry_run:
                continue
            try:
                outcome = write(row)
                self.repository.mark_synced(entity_type, row["id"], outcome.native_id, row["version"])
            except Exception as e:
                message = f"{entity_type.value} {item_id}: {e}"
                self.logger.warning(f"Failed to propagate {message}")
                result.errors.append(message)
                self._mark_failed(entity_type, row["id"], item_id)
                self._log_item(entity_type, item_id, SyncDirection.POSTGRES_TO_NEO4J, SyncStatus.FAILED,
                               error_message=str(e))
                continue

            if outcome.applied:
                self._log_item(entity_type, item_id, SyncDirection.POSTGRES_TO_NEO4J, SyncStatus.SUCCESS,
                               payload={"graph_id": outcome.native_id, "version": row["version"]})
            else:
                self.logger.info(
                    f"{entity_type.value} {item_id}: graph holds version {outcome.previous_version}, "
                    f"newer than {row['version']}; keeping graph copy"
                )
                self._log_item(
                    entity_type, item_id, SyncDirection.POSTGRES_TO_NEO4J, SyncStatus.CONFLICT,
                    conflict_resolution=ConflictResolution.TARGET_WINS,
                    payload={
                        "graph_id": outcome.native_id,
                        "graph_version": outcome.previous_version,
                        "relational_version": row["version"],
                    },
                )

    def _writers(self) -> Dict[EntityType, Callable[[Dict[str, Any]], MirrorWrite]]:
        return {
            EntityType.DOCUMENT: self._write_document,
            EntityType.CHUNK: self._write_chunk,
            EntityType.ENTITY: self._write_entity,
            EntityType.RELATIONSHIP: self._write_relationship,
        }

    @staticmethod
    def _item_id(entity_type: EntityType, row: Dict[str, Any]) -> str:
        if entity_type == EntityType.ENTITY:
            return row["entity_id"]
        if entity_type == EntityType.RELATIONSHIP:
            return f"{row['source_entity_id']}-{row['relationship_type']}->{row['target_entity_id']}"
        return row["id"]

    def _write_document(self, row: Dict[str, Any]) -> MirrorWrite:
        properties = {
            **(row.get("metadata") or {}),
            "title": row["title"],
            "content": row["content"],
            "contentHash": row["content_hash"],
            "source": row.get("source"),
            "relationalId": row["id"],
        }
        return self.graph_store.upsert_document(row["id"], properties, row["version"])

    def _write_chunk(self, row: Dict[str, Any]) -> MirrorWrite:
        properties = {
            **(row.get("metadata") or {}),
            "content": row["content"],
            "chunkIndex": row["chunk_index"],
            "startOffset": row["start_offset"],
            "endOffset": row["end_offset"],
            "embedding": row.get("embedding"),
            "relationalId": row["id"],
        }
        return self.graph_store.upsert_chunk(row["id"], row["document_id"], properties, row["version"])

    def _write_entity(self, row: Dict[str, Any]) -> MirrorWrite:
        properties = {
            **(row.get("metadata") or {}),
            "name": row["entity_name"],
            "entityType": row["entity_type"],
            "embedding": row.get("embedding"),
            "centralityScore": row.get("centrality_score"),
            "relationalId": row["id"],
        }
        return self.graph_store.upsert_entity(row["entity_id"], properties, row["version"])

    def _write_relationship(self, row: Dict[str, Any]) -> MirrorWrite:
        properties = {
            **(row.get("metadata") or {}),
            "strength": row.get("relationship_strength"),
            "relationalId": row["id"],
        }
        return self.graph_store.upsert_relationship(
            row["source_entity_id"],
            row["target_entity_id"],
            row["relationship_type"],
            properties,
            row["version"],
        )

    # ------------------------------------------------------------------
    # neo4j -> postgres
    # ------------------------------------------------------------------

    def _pull_entities(self, batch_size: int, dry_run: bool, result: SyncResult):
        nodes = self.graph_store.find_unmirrored_entities(batch_size)
        if nodes:
            self.logger.info(f"Propagating {len(nodes)} graph entities to postgres")

        for node in nodes:
            entity_id = node.get("id") or node.id
            self._check_cancelled(EntityType.ENTITY, entity_id)
            result.entities_processed += 1
            if dry_run:
                continue
            version = int(node.get("version") or 1)
            try:
                metadata = {
                    k: v for k, v in node.properties.items()
                    if k not in ("id", "name", "entityType", "embedding", "centralityScore",
                                 "version", "syncVersion", "lastSyncedAt", "lastUpdated", "relationalId")
                }
                row_id, applied = self.repository.upsert_entity_from_graph(
                    entity_id=entity_id,
                    entity_name=node.get("name") or entity_id,
                    entity_type=node.get("entityType") or (node.labels[0] if node.labels else "Entity"),
                    graph_node_id=node.id,
                    version=version,
                    metadata=metadata,
                    embedding=node.get("embedding"),
                    centrality_score=node.centrality,
                )
                self.graph_store.mark_mirrored(node.id, version)
            except Exception as e:
                message = f"entity {entity_id}: {e}"
                self.logger.warning(f"Failed to mirror {message}")
                result.errors.append(message)
                self._log_item(EntityType.ENTITY, entity_id, SyncDirection.NEO4J_TO_POSTGRES, SyncStatus.FAILED,
                               error_message=str(e))
                continue
            self._log_pulled(EntityType.ENTITY, entity_id, applied, row_id, version)

    def _pull_relationships(self, batch_size: int, dry_run: bool, result: SyncResult):
        found = self.graph_store.find_unmirrored_relationships(batch_size)
        if found:
            self.logger.info(f"Propagating {len(found)} graph relationships to postgres")

        for relationship, source_id, target_id in found:
            item_id = f"{source_id}-{relationship.type}->{target_id}"
            self._check_cancelled(EntityType.RELATIONSHIP, item_id)
            result.relationships_processed += 1
            if dry_run:
                continue
            version = int(relationship.properties.get("version") or 1)
            try:
                strength = relationship.properties.get("strength")
                metadata = {
                    k: v for k, v in relationship.properties.items()
                    if k not in ("strength", "version", "syncVersion", "lastSyncedAt", "lastUpdated", "relationalId")
                }
                row_id, applied = self.repository.upsert_relationship_from_graph(
                    source_entity_id=source_id,
                    target_entity_id=target_id,
                    relationship_type=relationship.type,
                    graph_relationship_id=relationship.id,
                    version=version,
                    strength=strength,
                    metadata=metadata,
                )
                self.graph_store.mark_mirrored(relationship.id, version, relationship=True)
            except Exception as e:
                message = f"relationship {item_id}: {e}"
                self.logger.warning(f"Failed to mirror {message}")
                result.errors.append(message)
                self._log_item(EntityType.RELATIONSHIP, item_id, SyncDirection.NEO4J_TO_POSTGRES,
                               SyncStatus.FAILED, error_message=str(e))
                continue
            self._log_pulled(EntityType.RELATIONSHIP, item_id, applied, row_id, version)

    def _log_pulled(self, entity_type: EntityType, item_id: str, applied: bool, row_id: str, version: int):
        if applied:
            self._log_item(entity_type, item_id, SyncDirection.NEO4J_TO_POSTGRES, SyncStatus.SUCCESS,
                           payload={"row_id": row_id, "version": version})
        else:
            self._log_item(entity_type, item_id, SyncDirection.NEO4J_TO_POSTGRES, SyncStatus.CONFLICT,
                           conflict_resolution=ConflictResolution.TARGET_WINS,
                           payload={"row_id": row_id, "graph_version": version})

    def _mark_failed(self, entity_type: EntityType, row_id: str, item_id: str):
        # moves the row behind rows that have not failed in the next pending() batch
        try:
            self.repository.mark_failed(entity_type, row_id)
        except Exception as e:
            self.logger.warning(f"Could not record failure of {entity_type.value} {item_id}: {e}")

    # ------------------------------------------------------------------
    # Sync log
    # ------------------------------------------------------------------

    def _log_item(
        self,
        entity_type: EntityType,
        item_id: str,
        direction: SyncDirection,
        status: SyncStatus,
        error_message: Optional[str] = None,
        conflict_resolution: Optional[ConflictResolution] = None,
        payload: Optional[Dict[str, Any]] = None,
    ):
        try:
            self.repository.append_sync_log(
                operation="propagate",
                entity_type=entity_type.value,
                entity_id=item_id,
                direction=direction.value,
                status=status,
                error_message=error_message,
                conflict_resolution=conflict_resolution.value if conflict_resolution else None,
                payload=payload,
            )
        except Exception as e:
            self.logger.warning(f"Could not append sync log entry for {entity_type.value} {item_id}: {e}")

    def _log_event(
        self,
        operation: str,
        direction: Any,
        status: SyncStatus,
        error_message: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ):
        try:
            self.repository.append_sync_log(
                operation=operation,
                entity_type="sync",
                entity_id="batch",
                direction=getattr(direction, "value", str(direction)),
                status=status,
                error_message=error_message,
                payload=payload,
            )
        except Exception as e:
            self.logger.warning(f"Could not append {operation} to sync log: {e}")

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def get_sync_stats(self) -> Dict[str, Any]:
        """
        Consistency and lag metrics. Never raises.

        Returns:
            Dict with last successful sync, lag, unsynced counts per entity
            type, log totals and the coordinator state
        """
        stats = {
            "last_successful_sync": None,
            "lag_seconds": None,
            "unsynced": {entity_type.value: 0 for entity_type in EntityType},
            "total_log_entries": 0,
            "failed_log_entries": 0,
            "state": self._state.value,
        }
        try:
            last = self.repository.last_successful_sync()
            if last is not None:
                stats["last_successful_sync"] = last.isoformat()
                stats["lag_seconds"] = max(0.0, (datetime.now(timezone.utc) - last).total_seconds())
            stats["unsynced"] = {
                entity_type.value: self.repository.count_unsynced(entity_type) for entity_type in EntityType
            }
            stats["total_log_entries"] = self.repository.count_log_entries()
            stats["failed_log_entries"] = self.repository.count_log_entries(SyncStatus.FAILED)
        except Exception as e:
            self.logger.warning(f"Error getting sync stats: {e}")
        return stats

    def recent_log(self, limit: int = 50, entity_id: Optional[str] = None) -> List[Dict[str, Any]]:
        if not isinstance(limit, int) or limit <= 0:
            raise ValidationError(f"limit must be a positive integer, got {limit!r}")
        return self.repository.recent_log(min(limit, self.settings.max_result_limit), entity_id)
