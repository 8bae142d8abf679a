"""Tests for the relational mirror repository on in-memory SQLite."""
import pytest

from conftest import add_chunk, add_document, add_entity, add_relationship
from core.errors import StoreConnectionError
from storage.database import Database
from storage.models import DocumentRecord, EntityType, SyncStatus


def test_pending_returns_unmirrored_rows_oldest_first(database, repository):
    add_document(database, "doc-b", created_offset=10)
    add_document(database, "doc-a", created_offset=0)
    add_document(database, "doc-synced", graph_node_id="4:db:9", sync_version=1)

    pending = repository.pending(EntityType.DOCUMENT, limit=10)

    assert [row["id"] for row in pending] == ["doc-a", "doc-b"]


def test_stale_rows_are_pending_again(database, repository):
    add_document(database, "doc-1", version=3, sync_version=2, graph_node_id="4:db:1")
    assert [row["id"] for row in repository.pending(EntityType.DOCUMENT, 10)] == ["doc-1"]


def test_mark_synced_stamps_cross_reference(database, repository):
    add_document(database, "doc-1")
    add_chunk(database, "chunk-1", "doc-1")

    repository.mark_synced(EntityType.CHUNK, "chunk-1", "4:db:77", version=1)

    assert repository.pending(EntityType.CHUNK, 10) == []
    assert repository.count_unsynced(EntityType.CHUNK) == 0
    assert repository.count_unsynced(EntityType.DOCUMENT) == 1


def test_mark_synced_never_lowers_sync_version(database, repository):
    add_document(database, "doc-1", version=5, sync_version=5, graph_node_id="4:db:1")
    repository.mark_synced(EntityType.DOCUMENT, "doc-1", "4:db:1", version=2)
    with database.session() as session:
        assert session.get(DocumentRecord, "doc-1").sync_version == 5


def test_mark_synced_missing_row(repository):
    with pytest.raises(LookupError):
        repository.mark_synced(EntityType.ENTITY, "nope", "4:db:1", version=1)


def test_failed_rows_go_behind_untried_ones(database, repository):
    for i in range(4):
        add_document(database, f"doc-{i}", created_offset=i)

    repository.mark_failed(EntityType.DOCUMENT, "doc-0")

    pending = repository.pending(EntityType.DOCUMENT, limit=4)
    assert [row["id"] for row in pending] == ["doc-1", "doc-2", "doc-3", "doc-0"]
    assert pending[3]["last_failed_at"] is not None
    assert [row["id"] for row in repository.pending(EntityType.DOCUMENT, limit=2)] == ["doc-1", "doc-2"]


def test_mark_synced_clears_failure(database, repository):
    add_document(database, "doc-1", version=2, sync_version=1, graph_node_id="4:db:1")
    repository.mark_failed(EntityType.DOCUMENT, "doc-1")
    repository.mark_synced(EntityType.DOCUMENT, "doc-1", "4:db:1", version=2)
    with database.session() as session:
        assert session.get(DocumentRecord, "doc-1").last_failed_at is None


def test_mark_failed_missing_row(repository):
    assert repository.mark_failed(EntityType.CHUNK, "nope") is None


def test_upsert_entity_from_graph_inserts_then_respects_newer_rows(repository):
    row_id, applied = repository.upsert_entity_from_graph(
        entity_id="bert", entity_name="BERT", entity_type="model", graph_node_id="4:db:1", version=2,
    )
    assert applied
    entity = repository.get_entity("bert")
    assert entity["id"] == row_id
    assert entity["graph_node_id"] == "4:db:1"
    assert entity["sync_version"] == 2

    _, applied = repository.upsert_entity_from_graph(
        entity_id="bert", entity_name="Old BERT", entity_type="model", graph_node_id="4:db:1", version=1,
    )
    assert not applied
    assert repository.get_entity("bert")["entity_name"] == "BERT"


def test_upsert_relationship_from_graph(database, repository):
    add_entity(database, "a")
    add_entity(database, "b")
    _, applied = repository.upsert_relationship_from_graph("a", "b", "USES", "5:db:1", version=1, strength=0.3)
    assert applied
    assert repository.count_unsynced(EntityType.RELATIONSHIP) == 0

    add_relationship(database, "b", "a", "CITES")
    assert repository.count_unsynced(EntityType.RELATIONSHIP) == 1


def test_sync_log(repository):
    repository.append_sync_log("propagate", "document", "doc-1", "postgres_to_neo4j", SyncStatus.SUCCESS)
    repository.append_sync_log("propagate", "document", "doc-2", "postgres_to_neo4j", SyncStatus.FAILED,
                               error_message="boom")
    repository.append_sync_log("sync_completed", "sync", "batch", "postgres_to_neo4j", SyncStatus.SUCCESS)

    assert repository.count_log_entries() == 3
    assert repository.count_log_entries(SyncStatus.FAILED) == 1
    assert repository.last_successful_sync() is not None
    assert repository.last_successful_sync().tzinfo is not None

    entries = repository.recent_log(limit=10, entity_id="doc-2")
    assert len(entries) == 1
    assert entries[0]["error_message"] == "boom"
    assert entries[0]["processed_at"] is not None


def test_no_successful_sync_yet(repository):
    assert repository.last_successful_sync() is None


def test_session_requires_open_database(test_settings):
    with pytest.raises(StoreConnectionError):
        with Database("sqlite://", config=test_settings).session():
            pass
