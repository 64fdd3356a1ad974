"""
TrustNet service - source trust graph API
Wires the graph, resolver, synthesizer and orchestrator once at startup
"""

from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from typing import Optional, Literal
import logging
import os
from datetime import datetime, timezone
from contextlib import asynccontextmanager

from dotenv import load_dotenv

from trustnet.cache import DomainCache
from trustnet.config import get_settings
from trustnet.errors import (
    ConnectionNotFoundError,
    ContentNotFoundError,
    SourceNotFoundError,
    StorageError,
    UnknownEndpointError,
    WeightOutOfRangeError,
)
from trustnet.graph import TrustGraph
from trustnet.models import (
    AnalysisResult,
    ContentPayload,
    ContentReport,
    FeedbackOutcome,
    SourceNode,
    TrustEdge,
)
from trustnet.orchestrator import RecomputeOrchestrator
from trustnet.reputation import ReputationClient
from trustnet.resolver import CredibilityResolver
from trustnet.storage import SqlSourceStore
from trustnet.synthesizer import ConnectionSynthesizer

# Load environment variables early so Settings picks them up
load_dotenv()

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler('logs/trustnet.log') if os.path.exists('logs') else logging.NullHandler()
    ]
)

logger = logging.getLogger(__name__)

VERSION = "1.0.0"
TITLE = "TrustNet Source Graph Service"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build every component once and hand them to the handlers via app.state"""
    logger.info("=" * 60)
    logger.info(f"Starting {TITLE} v{VERSION}")
    logger.info("=" * 60)

    store = SqlSourceStore(settings.database_url)
    await store.create_all()

    graph = TrustGraph(store)
    # Startup-fatal: a graph that cannot load must not serve requests
    await graph.initialize()

    cache = DomainCache(redis_url=settings.redis_url or "", ttl=settings.resolver_cache_ttl)
    await cache.connect()

    reputation = ReputationClient(settings=settings)
    if not reputation.enabled:
        logger.warning("No reputation API key configured; external source lookup disabled")

    resolver = CredibilityResolver(store, graph, reputation=reputation, cache=cache, settings=settings)
    synthesizer = ConnectionSynthesizer(store, graph, settings=settings)
    orchestrator = RecomputeOrchestrator(store, graph, synthesizer, resolver, settings=settings)

    app.state.store = store
    app.state.graph = graph
    app.state.resolver = resolver
    app.state.synthesizer = synthesizer
    app.state.orchestrator = orchestrator

    orchestrator.start()
    logger.info("Service ready")

    yield

    logger.info("Shutting down...")
    await orchestrator.stop()
    await cache.close()
    await store.close()
    logger.info("Shutdown complete")


app = FastAPI(
    title=TITLE,
    version=VERSION,
    description="Source trust graph: propagation, synthesis and feedback",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SourceNotFoundError)
@app.exception_handler(ContentNotFoundError)
@app.exception_handler(ConnectionNotFoundError)
async def not_found_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"error": str(exc)})


@app.exception_handler(UnknownEndpointError)
@app.exception_handler(WeightOutOfRangeError)
async def structural_error_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(exc)})


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.error(f"Storage failure: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": "Storage unavailable", "detail": str(exc) if os.getenv("DEBUG") else None}
    )


# Request models
class ConnectionRequest(BaseModel):
    source_id: int
    target_id: int
    weight: float = Field(..., ge=0.0, le=1.0)


class WeightUpdateRequest(BaseModel):
    weight: float = Field(..., ge=0.0, le=1.0)


class FeedbackRequest(BaseModel):
    content_id: int
    polarity: Literal["trustworthy", "false"]
    comment: Optional[str] = Field(None, max_length=2000)


# API endpoints
@app.get("/health")
async def health_check(request: Request):
    graph: TrustGraph = request.app.state.graph
    orchestrator: RecomputeOrchestrator = request.app.state.orchestrator
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "graph": {"nodes": graph.node_count, "edges": graph.edge_count},
        "recompute": orchestrator.status(),
    }


@app.get("/graph")
async def get_graph(request: Request):
    return request.app.state.graph.to_json()


@app.get("/graph/stats")
async def get_graph_stats(request: Request):
    return request.app.state.graph.get_stats()


@app.get("/graph/bfs/{source_id}")
async def get_bfs(request: Request, source_id: int, depth: int = Query(3, ge=0, le=10)):
    return request.app.state.graph.bfs(source_id, depth).as_dict()


@app.get("/graph/trust/{source_id}")
async def get_trust_score(request: Request, source_id: int, depth: int = Query(3, ge=0, le=10)):
    graph: TrustGraph = request.app.state.graph
    if not graph.has_node(source_id):
        raise SourceNotFoundError(source_id)
    return {"source_id": source_id, "depth": depth, "trust_score": graph.calculate_trust_score(source_id, depth)}


@app.get("/sources/top")
async def get_top_sources(request: Request, limit: int = Query(10, ge=1, le=100)):
    return request.app.state.graph.top_sources(limit)


@app.post("/sources", response_model=SourceNode, status_code=status.HTTP_201_CREATED)
async def add_source(request: Request, node: SourceNode):
    return await request.app.state.orchestrator.add_source_and_update(node)


@app.post("/graph/connections", response_model=TrustEdge, status_code=status.HTTP_201_CREATED)
async def add_connection(request: Request, body: ConnectionRequest):
    return await request.app.state.graph.add_connection(body.source_id, body.target_id, body.weight)


@app.put("/graph/connections/{source_id}/{target_id}")
async def update_connection(request: Request, source_id: int, target_id: int, body: WeightUpdateRequest):
    await request.app.state.graph.update_connection_weight(source_id, target_id, body.weight)
    return {"source_id": source_id, "target_id": target_id, "weight": body.weight}


@app.delete("/graph/connections/{source_id}/{target_id}")
async def delete_connection(request: Request, source_id: int, target_id: int):
    removed = await request.app.state.graph.remove_connection(source_id, target_id)
    if not removed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Connection not found")
    return {"message": "Connection deleted"}


@app.post("/analyze", response_model=AnalysisResult)
async def analyze_content(request: Request, payload: ContentPayload):
    return await request.app.state.orchestrator.analyze_and_update(payload)


@app.post("/feedback", response_model=FeedbackOutcome)
async def submit_feedback(request: Request, body: FeedbackRequest):
    return await request.app.state.resolver.process_feedback(body.content_id, body.polarity, body.comment or "")


@app.get("/reports/{content_id}", response_model=ContentReport)
async def get_report(request: Request, content_id: int):
    return await request.app.state.resolver.generate_report(content_id)


@app.post("/system/force-update")
async def force_update(request: Request):
    report = await request.app.state.orchestrator.force_update()
    if report is None:
        return {"message": "Update already in progress", "started": False}
    return {
        "message": "Update completed" if report.succeeded else "Update failed",
        "started": True,
        "error": report.error,
        "metrics": report.metrics,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/system/status")
async def get_status(request: Request):
    return request.app.state.orchestrator.status()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8001")),
        log_level="info",
    )
