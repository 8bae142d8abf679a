"""Tests for the synchronization coordinator."""
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError as PydanticValidationError

from config.settings import Settings
from conftest import add_chunk, add_document, add_entity, add_relationship, make_node
from core.errors import GraphQueryError, PartialBatchFailure, StoreConnectionError, ValidationError
from graph.neo4j_store import MirrorWrite, Neo4jStore
from graph.records import GraphRelationship
from services.sync_service import SyncCoordinator, SyncOptions, SyncState
from storage.models import EntityType, SyncDirection
from storage.repository import MirrorRepository


def applied(native_id, previous=0):
    return MirrorWrite(native_id=native_id, previous_version=previous, applied=True)


@pytest.fixture
def graph_store():
    store = MagicMock(spec=Neo4jStore)
    store.upsert_document.side_effect = lambda doc_id, props, version: applied(f"4:db:{doc_id}")
    store.upsert_chunk.side_effect = lambda chunk_id, doc_id, props, version: applied(f"4:db:{chunk_id}")
    store.upsert_entity.side_effect = lambda entity_id, props, version: applied(f"4:db:{entity_id}")
    store.upsert_relationship.side_effect = lambda s, t, rel_type, props, version: applied(f"5:db:{s}-{t}")
    store.find_unmirrored_entities.return_value = []
    store.find_unmirrored_relationships.return_value = []
    return store


@pytest.fixture
def coordinator(repository, graph_store, test_settings):
    return SyncCoordinator(repository, graph_store, config=test_settings)


def item_entries(repository, entity_type="document"):
    return [
        e for e in repository.recent_log(limit=100)
        if e["operation"] == "propagate" and e["entity_type"] == entity_type
    ]


def test_full_push_in_dependency_order(database, coordinator, graph_store, repository):
    add_document(database, "doc-1", metadata={"lang": "en"})
    add_chunk(database, "chunk-1", "doc-1")
    add_entity(database, "bert", name="BERT")
    add_entity(database, "gpt", name="GPT")
    add_relationship(database, "bert", "gpt", "PRECEDES")

    result = coordinator.sync(SyncOptions(direction=SyncDirection.POSTGRES_TO_NEO4J))

    assert result.success
    assert (result.documents_processed, result.chunks_processed,
            result.entities_processed, result.relationships_processed) == (1, 1, 2, 1)
    calls = [c[0] for c in graph_store.method_calls if c[0].startswith("upsert_")]
    assert calls == ["upsert_document", "upsert_chunk", "upsert_entity", "upsert_entity", "upsert_relationship"]

    doc_props = graph_store.upsert_document.call_args[0][1]
    assert doc_props["title"] == "Document doc-1"
    assert doc_props["contentHash"] == "hash-doc-1"
    assert doc_props["lang"] == "en"
    assert repository.get_entity("bert")["graph_node_id"] == "4:db:bert"
    assert coordinator.state == SyncState.COMPLETED


def test_sync_is_idempotent(database, coordinator, graph_store):
    for i in range(3):
        add_document(database, f"doc-{i}", created_offset=i)

    first = coordinator.sync()
    graph_store.reset_mock()
    second = coordinator.sync()

    assert first.documents_processed == 3
    assert second.success
    assert second.total_processed == 0
    graph_store.upsert_document.assert_not_called()


def test_partial_failure_collects_errors(database, coordinator, graph_store, repository):
    for i in range(1, 6):
        add_document(database, f"doc-{i}", created_offset=i)

    def upsert(doc_id, props, version):
        if doc_id == "doc-3":
            raise GraphQueryError("constraint violated")
        return applied(f"4:db:{doc_id}")

    graph_store.upsert_document.side_effect = upsert

    result = coordinator.sync()

    assert result.documents_processed == 5
    assert result.errors == ["document doc-3: constraint violated"]
    assert not result.success
    entries = item_entries(repository)
    failed = [e for e in entries if e["status"] == "failed"]
    assert [e["entity_id"] for e in failed] == ["doc-3"]
    assert sorted(e["entity_id"] for e in entries if e["status"] == "success") == ["doc-1", "doc-2", "doc-4", "doc-5"]
    assert repository.count_unsynced(EntityType.DOCUMENT) == 1
    assert coordinator.state == SyncState.FAILED
    with pytest.raises(PartialBatchFailure) as exc:
        result.raise_for_errors()
    assert exc.value.errors == result.errors


def test_dry_run_counts_without_writing(database, coordinator, graph_store, repository):
    for i in range(4):
        add_document(database, f"doc-{i}", created_offset=i)

    result = coordinator.sync(SyncOptions(dry_run=True))

    assert result.dry_run
    assert result.documents_processed == 4
    graph_store.upsert_document.assert_not_called()
    assert repository.count_unsynced(EntityType.DOCUMENT) == 4
    assert item_entries(repository) == []
    assert repository.last_successful_sync() is None


def test_newer_graph_version_is_a_conflict_not_an_error(database, coordinator, graph_store, repository):
    add_entity(database, "bert", version=2)
    graph_store.upsert_entity.side_effect = None
    graph_store.upsert_entity.return_value = MirrorWrite(native_id="4:db:bert", previous_version=5, applied=False)

    result = coordinator.sync()

    assert result.success
    assert result.errors == []
    [entry] = item_entries(repository, "entity")
    assert entry["status"] == "conflict"
    assert entry["conflict_resolution"] == "target_wins"
    assert entry["payload"]["graph_version"] == 5
    assert repository.count_unsynced(EntityType.ENTITY) == 0


def test_cancel_stops_after_current_item(database, coordinator, graph_store):
    for i in range(5):
        add_document(database, f"doc-{i}", created_offset=i)

    def upsert(doc_id, props, version):
        coordinator.cancel()
        return applied(f"4:db:{doc_id}")

    graph_store.upsert_document.side_effect = upsert

    result = coordinator.sync()

    assert result.cancelled
    assert result.documents_processed == 1
    assert result.errors == ["sync cancelled before document doc-1"]
    assert result.success == (len(result.errors) == 0)
    assert not result.success
    assert coordinator.state == SyncState.FAILED


def test_failing_rows_do_not_starve_newer_ones(database, coordinator, graph_store, repository, test_settings):
    test_settings.sync_batch_size = 2
    add_entity(database, "alice")
    add_entity(database, "acme")
    add_relationship(database, "alice", "acme", "works for", created_offset=0)
    add_relationship(database, "acme", "alice", "works for", created_offset=1)
    add_relationship(database, "alice", "acme", "KNOWS", created_offset=2)

    def upsert(source, target, rel_type, props, version):
        if " " in rel_type:
            raise ValidationError(f"Invalid relationship type: {rel_type}")
        return applied(f"5:db:{source}-{rel_type}-{target}")

    graph_store.upsert_relationship.side_effect = upsert

    first = coordinator.sync()
    second = coordinator.sync()

    attempted = [c.args[2] for c in graph_store.upsert_relationship.call_args_list]
    assert attempted[:2] == ["works for", "works for"]
    assert attempted[2] == "KNOWS"
    assert len(first.errors) == 2
    assert second.relationships_processed == 2
    assert len(second.errors) == 1
    assert repository.count_unsynced(EntityType.RELATIONSHIP) == 2


def test_pull_graph_native_items(coordinator, graph_store, repository):
    node = make_node("bert", 0.5, name="BERT", entityType="model", version=2, syncVersion=1, year=2018)
    rel = GraphRelationship(
        id="5:db:7", type="PRECEDES", start_node_id=node.id, end_node_id="4:db:gpt",
        properties={"version": 1, "strength": 0.4},
    )
    graph_store.find_unmirrored_entities.return_value = [node]
    graph_store.find_unmirrored_relationships.return_value = [(rel, "bert", "gpt")]

    result = coordinator.sync(SyncOptions(direction=SyncDirection.NEO4J_TO_POSTGRES))

    assert result.success
    assert result.entities_processed == 1
    assert result.relationships_processed == 1
    entity = repository.get_entity("bert")
    assert entity["entity_name"] == "BERT"
    assert entity["centrality_score"] == 0.5
    assert entity["metadata"] == {"year": 2018}
    graph_store.mark_mirrored.assert_any_call(node.id, 2)
    graph_store.mark_mirrored.assert_any_call("5:db:7", 1, relationship=True)
    graph_store.upsert_document.assert_not_called()


def test_concurrent_run_is_rejected(coordinator):
    coordinator._run_lock.acquire()
    try:
        result = coordinator.sync()
    finally:
        coordinator._run_lock.release()
    assert not result.success
    assert result.errors == ["sync already running"]


def test_orchestration_failure_is_reported(coordinator, graph_store):
    coordinator.repository = MagicMock(spec=MirrorRepository)
    coordinator.repository.pending.side_effect = StoreConnectionError("postgres", "connection refused")

    result = coordinator.sync()

    assert not result.success
    assert result.errors == ["sync: postgres: connection refused"]


def test_stats_after_sync(database, coordinator, repository):
    add_document(database, "doc-1")
    add_entity(database, "bert")
    coordinator.sync()

    stats = coordinator.get_sync_stats()

    assert stats["last_successful_sync"] is not None
    assert stats["lag_seconds"] >= 0
    assert stats["unsynced"] == {"document": 0, "chunk": 0, "entity": 0, "relationship": 0}
    assert stats["total_log_entries"] == 4  # started, two items, completed
    assert stats["failed_log_entries"] == 0
    assert stats["state"] == "completed"


def test_stats_never_raise(coordinator):
    coordinator.repository = MagicMock(spec=MirrorRepository)
    coordinator.repository.last_successful_sync.side_effect = StoreConnectionError("postgres", "down")

    stats = coordinator.get_sync_stats()

    assert stats["last_successful_sync"] is None
    assert stats["unsynced"]["document"] == 0
    assert stats["state"] == "idle"


def test_log_append_failures_do_not_fail_the_run(database, coordinator, repository, monkeypatch):
    add_document(database, "doc-1")

    def broken(*args, **kwargs):
        raise StoreConnectionError("postgres", "log table locked")

    monkeypatch.setattr(repository, "append_sync_log", broken)

    result = coordinator.sync()

    assert result.success
    assert result.documents_processed == 1


@pytest.mark.parametrize("options,expected", [
    (SyncOptions(direction="sideways"), "'sideways' is not a valid SyncDirection"),
    (SyncOptions(batch_size=0), "batch_size must be a positive integer"),
    (SyncOptions(batch_size=-5, dry_run=True), "batch_size must be a positive integer"),
])
def test_invalid_options_are_reported_not_raised(database, coordinator, graph_store, options, expected):
    add_document(database, "doc-1")

    result = coordinator.sync(options)

    assert not result.success
    assert len(result.errors) == 1
    assert expected in result.errors[0]
    assert coordinator.state == SyncState.FAILED
    graph_store.upsert_document.assert_not_called()


def test_invalid_direction_setting_is_reported_not_raised(coordinator, repository, test_settings):
    test_settings.sync_direction = "sideways"

    result = coordinator.sync()

    assert not result.success
    assert "'sideways' is not a valid SyncDirection" in result.errors[0]
    [entry] = [e for e in repository.recent_log(limit=10) if e["operation"] == "sync_failed"]
    assert entry["direction"] == "sideways"


def test_direction_setting_is_validated_on_load():
    with pytest.raises(PydanticValidationError):
        Settings(log_file="", sync_direction="sideways")
