"""FastAPI application."""
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel, Field

from config.settings import settings  # This will trigger logger setup via config.__init__
from core.errors import (
    DegradedRoutingError,
    RetrievalError,
    StoreConnectionError,
    UnsupportedOperationError,
    ValidationError,
)
from graph.connection import Neo4jConnection
from graph.neo4j_store import Neo4jStore
from retrieval.vector_store import VectorStore
from routing.capabilities import describe_strategies
from routing.classifier import QueryHints
from services.health_service import HealthMonitor
from services.query_service import QueryService, RetrievalQuery
from services.scheduler import BackgroundJobs
from services.sync_service import SyncCoordinator, SyncOptions
from storage.database import Database
from storage.models import SyncDirection
from storage.repository import MirrorRepository

# Initialize FastAPI app
app = FastAPI(
    title="Dual-Store Retrieval Router API",
    description="Routes retrieval queries between the vector and graph stores and keeps them in sync",
    version="1.0.0",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify allowed origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Global components (initialized on startup)
database: Database = None
neo4j_connection: Neo4jConnection = None
neo4j_store: Neo4jStore = None
vector_store: VectorStore = None
health_monitor: HealthMonitor = None
query_service: QueryService = None
sync_coordinator: SyncCoordinator = None
background_jobs: BackgroundJobs = None


# Pydantic models
class QueryRequest(BaseModel):
    """Retrieval query request model."""
    query: str = ""
    embedding: Optional[List[float]] = None
    start_entity_id: Optional[str] = None
    requested_hop_count: Optional[int] = None
    requires_entity_resolution: bool = False
    requires_community_detection: bool = False
    limit: int = 10
    threshold: Optional[float] = None
    max_depth: int = 2
    relationship_types: List[str] = Field(default_factory=list)
    node_labels: List[str] = Field(default_factory=list)
    routing_policy: Optional[str] = None

    def to_query(self) -> RetrievalQuery:
        hints = QueryHints(
            requested_hop_count=self.requested_hop_count,
            requires_entity_resolution=self.requires_entity_resolution,
            requires_community_detection=self.requires_community_detection,
        )
        return RetrievalQuery(
            text=self.query,
            hints=hints,
            embedding=self.embedding,
            start_entity_id=self.start_entity_id,
            limit=self.limit,
            threshold=self.threshold,
            max_depth=self.max_depth,
            relationship_types=self.relationship_types,
            node_labels=self.node_labels,
            routing_policy=self.routing_policy,
        )


class TraverseRequest(BaseModel):
    """Graph traversal request model."""
    start_entity_id: str
    max_depth: int = 3
    relationship_types: List[str] = Field(default_factory=list)
    node_labels: List[str] = Field(default_factory=list)
    limit: int = 100


class AnalyticsRequest(BaseModel):
    """Graph analytics request model."""
    algorithm: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    limit: int = 100


class SyncRequest(BaseModel):
    """Sync run request model."""
    direction: SyncDirection = SyncDirection.POSTGRES_TO_NEO4J
    batch_size: Optional[int] = None
    dry_run: bool = False


def _http_error(e: RetrievalError) -> HTTPException:
    """Map the error taxonomy onto HTTP status codes."""
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, UnsupportedOperationError):
        return HTTPException(status_code=501, detail=str(e))
    if isinstance(e, DegradedRoutingError):
        detail = {"error": e.reasoning}
        if e.decision is not None:
            detail["decision"] = e.decision.to_dict()
        return HTTPException(status_code=503, detail=detail)
    if isinstance(e, StoreConnectionError):
        return HTTPException(status_code=503, detail={"error": str(e), "store": e.store})
    return HTTPException(status_code=500, detail=str(e))


def _require(component, name: str):
    if component is None:
        raise HTTPException(status_code=500, detail=f"{name} not initialized")
    return component


@app.on_event("startup")
async def startup_event():
    """Initialize services on startup."""
    global database, neo4j_connection, neo4j_store, vector_store
    global health_monitor, query_service, sync_coordinator, background_jobs

    logger.info("Initializing services...")

    try:
        database = Database().open()
        database.create_all()
        neo4j_connection = Neo4jConnection().open()
        neo4j_store = Neo4jStore(neo4j_connection)
        vector_store = VectorStore(database)

        health_monitor = HealthMonitor(vector_store.check_health, neo4j_store.check_health)
        snapshot = health_monitor.refresh()
        if snapshot.neo4j.healthy:
            neo4j_store.ensure_schema()

        query_service = QueryService(vector_store, neo4j_store, health_monitor)
        sync_coordinator = SyncCoordinator(MirrorRepository(database), neo4j_store)
        background_jobs = BackgroundJobs(health_monitor, sync_coordinator)
        background_jobs.start()

        logger.info("Services initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}")
        raise


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown."""
    if background_jobs:
        background_jobs.shutdown()
    if vector_store:
        vector_store.close()
    if neo4j_connection:
        neo4j_connection.close()
    if database:
        database.dispose()
    logger.info("Services shut down")


@app.get("/")
async def root():
    """Liveness endpoint."""
    return {"status": "ok", "message": "Dual-Store Retrieval Router API"}


@app.get("/api/health")
async def health_check():
    """Latest health snapshot of both stores."""
    snapshot = _require(health_monitor, "Health monitor").snapshot()
    healthy = snapshot.postgres.healthy and snapshot.neo4j.healthy
    return {"status": "ok" if healthy else "degraded", **snapshot.to_dict()}


@app.get("/api/routing/strategies")
async def routing_strategies():
    """Routing strategies and the policies that choose between them."""
    engine = _require(query_service, "Query service").engine
    return {
        "strategies": describe_strategies(),
        "policies": engine.available_policies(),
        "default_policy": engine.default_policy,
    }


@app.get("/api/routing/stats")
async def routing_stats():
    """Routing decisions counted per policy and strategy."""
    return _require(query_service, "Query service").engine.get_routing_stats()


@app.post("/api/route")
async def route_query(request: QueryRequest):
    """Routing decision for a query, without executing it."""
    service = _require(query_service, "Query service")
    try:
        decision = service.route(request.to_query())
    except RetrievalError as e:
        raise _http_error(e)
    return decision.to_dict()


@app.post("/api/query")
def query_documents(request: QueryRequest):
    """
    Route and execute a retrieval query.

    Args:
        request: Query text, optional embedding/entity and structural hints

    Returns:
        Routing decision with the results of each store that served it
    """
    service = _require(query_service, "Query service")
    try:
        return service.process_query(request.to_query()).to_dict()
    except RetrievalError as e:
        logger.warning(f"Query failed: {e}")
        raise _http_error(e)


@app.post("/api/graph/traverse")
def traverse_graph(request: TraverseRequest):
    """Bounded multi-hop traversal from an entity."""
    store = _require(neo4j_store, "Graph store")
    try:
        result = store.traverse(
            request.start_entity_id,
            max_depth=request.max_depth,
            relationship_types=request.relationship_types,
            node_labels=request.node_labels,
            limit=request.limit,
        )
    except RetrievalError as e:
        raise _http_error(e)
    return result.to_dict()


@app.post("/api/graph/analytics")
def graph_analytics(request: AnalyticsRequest):
    """Run a named graph algorithm."""
    store = _require(neo4j_store, "Graph store")
    try:
        result = store.run_analytics(request.algorithm, request.parameters, limit=request.limit)
    except RetrievalError as e:
        raise _http_error(e)
    return result.to_dict()


@app.post("/api/sync")
def run_sync(request: SyncRequest):
    """Run one synchronization pass and return its outcome."""
    coordinator = _require(sync_coordinator, "Sync coordinator")
    result = coordinator.sync(SyncOptions(
        direction=request.direction,
        batch_size=request.batch_size,
        dry_run=request.dry_run,
    ))
    return result.to_dict()


@app.get("/api/sync/stats")
def sync_stats():
    """Consistency and lag metrics."""
    return _require(sync_coordinator, "Sync coordinator").get_sync_stats()


@app.get("/api/sync/log")
def sync_log(limit: int = Query(50, ge=1), entity_id: Optional[str] = None):
    """Most recent sync log entries, newest first."""
    coordinator = _require(sync_coordinator, "Sync coordinator")
    try:
        return {"entries": coordinator.recent_log(limit=limit, entity_id=entity_id)}
    except RetrievalError as e:
        raise _http_error(e)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
    )
