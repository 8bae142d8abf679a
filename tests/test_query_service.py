"""Tests for query routing and dispatch."""
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from conftest import make_node, make_path
from core.errors import DegradedRoutingError, StoreConnectionError, ValidationError
from graph.neo4j_store import Neo4jStore
from graph.records import GraphQueryResult
from retrieval.vector_store import VectorMatch, VectorStore
from routing.capabilities import StoreId, Strategy
from routing.classifier import QueryHints
from routing.router import HealthSnapshot, StoreHealth
from services.health_service import HealthMonitor
from services.query_service import QueryService, RetrievalQuery


def health(postgres_up=True, neo4j_up=True, postgres_latency=5.0, neo4j_latency=12.0):
    now = datetime.now(timezone.utc)
    return HealthSnapshot(
        postgres=StoreHealth(healthy=postgres_up, latency_ms=postgres_latency if postgres_up else -1, checked_at=now),
        neo4j=StoreHealth(healthy=neo4j_up, latency_ms=neo4j_latency if neo4j_up else -1, checked_at=now),
    )


def graph_result(**kwargs):
    return GraphQueryResult(query="MATCH", parameters={}, result_count=kwargs.pop("result_count", 0),
                            execution_time_ms=1.0, **kwargs)


@pytest.fixture
def vector_store():
    store = MagicMock(spec=VectorStore)
    store.similarity_search.return_value = [VectorMatch(id="chunk-1", score=0.91, collection="chunks")]
    store.entity_lookup.return_value = {"entity_id": "bert", "entity_name": "BERT"}
    return store


@pytest.fixture
def graph_store():
    store = MagicMock(spec=Neo4jStore)
    path = make_path(make_node("bert"), make_node("gpt"))
    store.traverse.return_value = graph_result(result_count=1, paths=[path])
    store.run_analytics.return_value = graph_result(metadata={"communities": []})
    store.find_similar_entities.return_value = graph_result(metadata={"approximate": True})
    store.lookup_entity.return_value = make_node("bert")
    return store


@pytest.fixture
def monitor():
    monitor = MagicMock(spec=HealthMonitor)
    monitor.snapshot.return_value = health()
    return monitor


@pytest.fixture
def service(vector_store, graph_store, monitor):
    return QueryService(vector_store, graph_store, monitor)


def test_simple_query_uses_vector_store(service, vector_store, graph_store):
    result = service.process_query(RetrievalQuery(text="what is attention", embedding=[0.1, 0.2]))

    assert result.decision.strategy == Strategy.VECTOR_ONLY
    assert result.served_by == [StoreId.POSTGRES]
    assert result.vector_matches[0].id == "chunk-1"
    graph_store.traverse.assert_not_called()


def test_relationship_query_traverses_graph(service, graph_store):
    query = RetrievalQuery(text="x", start_entity_id="bert", hints=QueryHints(requested_hop_count=2),
                           relationship_types=["PRECEDES"])
    result = service.process_query(query)

    assert result.decision.strategy == Strategy.GRAPH_ONLY
    assert result.graph.result_count == 1
    graph_store.traverse.assert_called_once_with(
        "bert", max_depth=2, relationship_types=["PRECEDES"], node_labels=[], limit=10,
    )


def test_community_query_runs_analytics(service, graph_store):
    result = service.process_query(RetrievalQuery(text="which communities exist"))

    assert result.served_by == [StoreId.NEO4J]
    assert graph_store.run_analytics.call_args[0][0] == "community_detection"


def test_entity_lookup_is_bridged_to_graph(service, vector_store, graph_store):
    result = service.process_query(RetrievalQuery(text="BERT", start_entity_id="bert"))

    assert result.decision.strategy == Strategy.VECTOR_PRIMARY_GRAPH_BRIDGE
    assert result.entity["entity_name"] == "BERT"
    assert result.metadata["graph_bridge"] == "ok"
    assert result.served_by == [StoreId.POSTGRES, StoreId.NEO4J]
    assert graph_store.traverse.call_args.kwargs["max_depth"] == 1


def test_bridge_failure_keeps_relational_result(service, graph_store):
    graph_store.traverse.side_effect = StoreConnectionError("neo4j", "ServiceUnavailable")

    result = service.process_query(RetrievalQuery(text="BERT", start_entity_id="bert"))

    assert result.entity is not None
    assert result.graph is None
    assert result.metadata["graph_bridge"].startswith("unavailable")


def test_hybrid_runs_both_stores(service, vector_store, graph_store):
    query = RetrievalQuery(text="papers like this", embedding=[0.3, 0.1], start_entity_id="bert")
    result = service.process_query(query)

    assert result.decision.strategy == Strategy.HYBRID
    assert result.served_by == [StoreId.POSTGRES, StoreId.NEO4J]
    assert result.vector_matches
    assert result.graph is not None


def test_hybrid_falls_back_when_primary_fails(service, monitor, vector_store, graph_store):
    monitor.snapshot.return_value = health(postgres_latency=50, neo4j_latency=5)
    graph_store.traverse.side_effect = StoreConnectionError("neo4j", "timed out")

    result = service.process_query(RetrievalQuery(text="x", embedding=[0.3], start_entity_id="bert"))

    assert result.decision.primary_store == StoreId.NEO4J
    assert result.served_by == [StoreId.POSTGRES]
    assert "timed out" in result.metadata["fallback_reason"]


def test_graph_shaped_query_with_graph_down_raises(service, monitor, graph_store):
    monitor.snapshot.return_value = health(neo4j_up=False)
    query = RetrievalQuery(text="x", start_entity_id="bert", hints=QueryHints(requested_hop_count=3))

    with pytest.raises(DegradedRoutingError) as exc:
        service.process_query(query)

    assert "traversal not possible" in exc.value.reasoning
    assert exc.value.decision.degraded
    graph_store.traverse.assert_not_called()


def test_vector_store_down_uses_graph_approximation(service, monitor, graph_store):
    monitor.snapshot.return_value = health(postgres_up=False)

    result = service.process_query(RetrievalQuery(text="what is attention", embedding=[0.1]))

    assert result.decision.degraded
    assert result.graph.metadata["approximate"] is True
    assert "degraded" in result.metadata


def test_connection_failure_without_fallback_propagates(service, vector_store):
    vector_store.similarity_search.side_effect = StoreConnectionError("postgres", "connection refused")

    with pytest.raises(StoreConnectionError):
        service.process_query(RetrievalQuery(text="x", embedding=[0.1]))


def test_nothing_executable(service):
    with pytest.raises(ValidationError):
        service.process_query(RetrievalQuery(text="what is attention"))


def test_route_does_not_touch_stores(service, vector_store, graph_store):
    decision = service.route(RetrievalQuery(text="how is BERT related to GPT"))

    assert decision.strategy == Strategy.GRAPH_ONLY
    assert not vector_store.method_calls
    assert not graph_store.method_calls


def test_result_to_dict(service):
    data = service.process_query(RetrievalQuery(text="x", embedding=[0.1])).to_dict()
    assert data["decision"]["strategy"] == "vector_only"
    assert data["served_by"] == ["postgres"]
    assert data["vector_matches"][0]["score"] == 0.91


def test_graph_first_policy_runs_graph_with_vector_fallback(service, vector_store, graph_store):
    query = RetrievalQuery(text="papers like this", embedding=[0.3, 0.1], start_entity_id="bert",
                           routing_policy="graph_first")
    result = service.process_query(query)

    assert result.decision.strategy == Strategy.GRAPH_PRIMARY_VECTOR_FALLBACK
    assert result.decision.policy == "graph_first"
    assert result.served_by == [StoreId.NEO4J]
    vector_store.similarity_search.assert_not_called()

    graph_store.traverse.side_effect = StoreConnectionError("neo4j", "timed out")
    result = service.process_query(query)
    assert result.served_by == [StoreId.POSTGRES]
    assert result.vector_matches[0].id == "chunk-1"


def test_vector_first_policy_skips_graph_enrichment(service, graph_store):
    result = service.process_query(RetrievalQuery(text="BERT", start_entity_id="bert", routing_policy="vector_first"))

    assert result.decision.strategy == Strategy.VECTOR_ONLY
    assert result.entity["entity_name"] == "BERT"
    graph_store.traverse.assert_not_called()


def test_unknown_routing_policy_is_rejected(service, vector_store):
    with pytest.raises(ValidationError):
        service.process_query(RetrievalQuery(text="x", embedding=[0.1], routing_policy="cheapest"))
    vector_store.similarity_search.assert_not_called()
