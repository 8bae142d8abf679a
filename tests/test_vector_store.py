"""Tests for the vector/relational execution layer."""
import threading
from unittest.mock import MagicMock

import pytest

from conftest import add_entity
from core.errors import StoreConnectionError, StoreTimeoutError, ValidationError
from retrieval.vector_store import VectorStore


@pytest.fixture
def chroma_client():
    client = MagicMock()
    collection = client.get_or_create_collection.return_value
    collection.query.return_value = {
        "ids": [["c-1", "c-2", "c-3"]],
        "distances": [[0.05, 0.3, 0.8]],
        "metadatas": [[{"document_id": "d-1"}, {"document_id": "d-1"}, None]],
        "documents": [["first", "second", "third"]],
    }
    return client


@pytest.fixture
def vector_store(database, chroma_client, test_settings):
    return VectorStore(database, chroma_client=chroma_client, config=test_settings)


def test_similarity_search_filters_by_threshold(vector_store, chroma_client):
    matches = vector_store.similarity_search([0.1, 0.2, 0.3], limit=3, threshold=0.6)

    assert [m.id for m in matches] == ["c-1", "c-2"]
    assert matches[0].score == pytest.approx(0.95)
    assert matches[0].metadata == {"document_id": "d-1"}
    chroma_client.get_or_create_collection.assert_called_with(
        name="document_chunks", embedding_function=None, metadata={"hnsw:space": "cosine"},
    )


def test_default_threshold_from_settings(vector_store):
    # threshold 0.5 in the test settings drops the 0.2-similarity hit
    assert len(vector_store.similarity_search([0.1], limit=3)) == 2


def test_limit_is_capped(vector_store, chroma_client):
    vector_store.similarity_search([0.1], limit=10_000)
    collection = chroma_client.get_or_create_collection.return_value
    assert collection.query.call_args.kwargs["n_results"] == 100


@pytest.mark.parametrize("kwargs", [
    {"embedding": []},
    {"embedding": [0.1], "limit": 0},
    {"embedding": [0.1], "threshold": 1.2},
    {"embedding": [0.1], "collection": "images"},
])
def test_invalid_parameters(vector_store, chroma_client, kwargs):
    with pytest.raises(ValidationError):
        vector_store.similarity_search(**kwargs)
    chroma_client.get_or_create_collection.return_value.query.assert_not_called()


def test_index_errors_are_connection_errors(vector_store, chroma_client):
    chroma_client.get_or_create_collection.return_value.query.side_effect = RuntimeError("server gone")
    with pytest.raises(StoreConnectionError) as exc:
        vector_store.similarity_search([0.1])
    assert exc.value.store == "postgres"


def test_entity_lookup_reads_relational_row(database, vector_store):
    add_entity(database, "bert", name="BERT", graph_node_id="4:db:1", sync_version=1)
    entity = vector_store.entity_lookup("bert")
    assert entity["entity_name"] == "BERT"
    assert entity["graph_node_id"] == "4:db:1"
    assert vector_store.entity_lookup("nobody") is None


def test_index_embeddings_checks_lengths(vector_store):
    with pytest.raises(ValidationError):
        vector_store.index_embeddings("chunks", ["a", "b"], [[0.1]])


def test_health(vector_store, chroma_client):
    assert vector_store.check_health().healthy

    chroma_client.heartbeat.side_effect = ConnectionError("refused")
    health = vector_store.check_health()
    assert not health.healthy
    assert health.latency_ms == -1
    assert health.error == "refused"


def test_slow_index_call_times_out(database, chroma_client, test_settings):
    test_settings.chroma_timeout = 0.05
    release = threading.Event()
    chroma_client.get_or_create_collection.return_value.query.side_effect = lambda **kwargs: release.wait(2)
    chroma_client.heartbeat.side_effect = lambda: release.wait(2)
    store = VectorStore(database, chroma_client=chroma_client, config=test_settings)
    try:
        with pytest.raises(StoreTimeoutError) as exc:
            store.similarity_search([0.1])
        assert exc.value.store == "postgres"

        health = store.check_health()
        assert not health.healthy
        assert "exceeded" in health.error
    finally:
        release.set()
        store.close()
