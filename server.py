#!/usr/bin/env python3
"""
Web Server - FastAPI surface for the recall engine.

Provides, per owner under /api/owners/{owner_id}:
- Memory formation from conversational turns (sync or queued)
- Multi-signal recall and recall consumption marking
- Dormant concepts, cross-domain bridges, theme clusters
- Themes, emotional trajectory, recall stats

Owner identity is asserted by the surrounding conversation system; this
service only validates the id's shape.
"""

import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from dormant import format_reactivation
from engine import MemoryEngine
from engine_config import EngineConfig
from memory_errors import NotFound, ValidationError
from memory_models import QueryContext
from memory_store import validate_owner_id
from scheduler import ClusteringScheduler


# Global instances (created on first use)
engine: Optional[MemoryEngine] = None
scheduler: Optional[ClusteringScheduler] = None


def get_engine() -> MemoryEngine:
    global engine
    if engine is None:
        engine = MemoryEngine(EngineConfig.load())
    return engine


def get_scheduler() -> ClusteringScheduler:
    global scheduler
    if scheduler is None:
        eng = get_engine()
        scheduler = ClusteringScheduler(eng.config.data_path / "scheduler_state.json")
        scheduler.set_callbacks(
            eng.owners_needing_clustering,
            lambda owner_id: eng.clusters(owner_id, refresh=True),
        )
    return scheduler


def _owner(owner_id: str) -> str:
    try:
        return validate_owner_id(owner_id)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))


# --- Pydantic Models ---

# 3000-01-01 UTC
MAX_TIMESTAMP = 32503680000.0

class ExtractRequest(BaseModel):
    text: str
    conversation_ref: str = ""
    phase: Optional[str] = None
    wait: bool = True


class RecallRequest(BaseModel):
    query: str
    valence: float = Field(0.0, ge=-1.0, le=1.0)
    arousal: float = Field(0.5, ge=0.0, le=1.0)
    phase: Optional[str] = None
    themes: Optional[list[str]] = None
    timestamp: Optional[float] = Field(None, ge=0.0, le=MAX_TIMESTAMP)
    k: Optional[int] = Field(None, ge=1, le=50)
    await_pending: bool = True


class ConsumedRequest(BaseModel):
    event_ids: list[str]


class DormantRequest(BaseModel):
    message: Optional[str] = None
    context: Optional[str] = None


class BridgeRequest(BaseModel):
    challenge: str


class ScheduleUpdate(BaseModel):
    hour: int = Field(ge=0, le=23)
    minute: int = Field(0, ge=0, le=59)


# --- Lifespan ---

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    print("[Server] Starting up...")
    get_engine()
    get_scheduler().start()

    yield

    print("[Server] Shutting down...")
    if scheduler:
        scheduler.stop()
    if engine:
        await engine.close()


# --- App ---

app = FastAPI(
    title="Recall Engine",
    description="Associative memory and multi-signal relevance ranking for conversation systems",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Health ---

@app.get("/api/health")
async def health():
    eng = get_engine()
    return {
        "status": "ok",
        "owners": len(eng.store.list_owners()),
        "pending_extractions": eng.pending_count(),
        "llm_url": eng.config.llm_url,
        "embed_model": eng.config.embed_model,
    }


# --- Memory Formation ---

@app.post("/api/owners/{owner_id}/extract")
async def extract(owner_id: str, request: ExtractRequest):
    """Extract memory from one turn. wait=false queues it and returns immediately."""
    owner_id = _owner(owner_id)
    eng = get_engine()
    if not request.wait:
        eng.submit_extraction(owner_id, request.conversation_ref, request.text, phase=request.phase)
        return {"status": "queued", "pending": eng.pending_count(owner_id)}
    result = await eng.extract(owner_id, request.conversation_ref, request.text, phase=request.phase)
    return {"status": "stored" if result.memories or result.themes else "empty", **result.to_dict()}


# --- Recall ---

@app.post("/api/owners/{owner_id}/recall")
async def recall(owner_id: str, request: RecallRequest):
    owner_id = _owner(owner_id)
    context = QueryContext(
        valence=request.valence,
        arousal=request.arousal,
        phase=request.phase,
        themes=request.themes,
        timestamp=request.timestamp if request.timestamp is not None else time.time(),
    )
    ranked = await get_engine().recall(
        owner_id, request.query, context, k=request.k, await_pending=request.await_pending
    )
    return {"memories": [r.to_dict() for r in ranked]}


@app.post("/api/owners/{owner_id}/recall/consumed")
async def recall_consumed(owner_id: str, request: ConsumedRequest):
    owner_id = _owner(owner_id)
    return {"updated": get_engine().mark_recall_consumed(owner_id, request.event_ids)}


@app.get("/api/owners/{owner_id}/recall/stats")
async def recall_stats(owner_id: str):
    return get_engine().recall_stats(_owner(owner_id))


# --- Dormant Concepts ---

def _dormant_payload(concepts) -> dict:
    return {"concepts": [{**c.to_dict(), "reactivation": format_reactivation(c)} for c in concepts]}


@app.get("/api/owners/{owner_id}/dormant")
async def dormant(owner_id: str):
    concepts = await get_engine().dormant_concepts(_owner(owner_id))
    return _dormant_payload(concepts)


@app.post("/api/owners/{owner_id}/dormant")
async def dormant_relevant(owner_id: str, request: DormantRequest):
    """Dormant concepts filtered by relevance to the current message/context."""
    concepts = await get_engine().dormant_concepts(
        _owner(owner_id), message=request.message, context=request.context
    )
    return _dormant_payload(concepts)


# --- Bridges & Clusters ---

@app.post("/api/owners/{owner_id}/bridges")
async def bridges(owner_id: str, request: BridgeRequest):
    result = await get_engine().bridge(_owner(owner_id), request.challenge)
    return {"bridges": [b.to_dict() for b in result]}


@app.get("/api/owners/{owner_id}/clusters")
async def clusters(owner_id: str, refresh: bool = False):
    """Stored cluster set. Pass ?refresh=true to recluster now."""
    cluster_set = await get_engine().clusters(_owner(owner_id), refresh=refresh)
    return cluster_set.to_dict()


# --- Themes & Emotions ---

@app.get("/api/owners/{owner_id}/themes")
async def themes(owner_id: str, limit: Optional[int] = None):
    return {"themes": [t.to_dict() for t in get_engine().themes(_owner(owner_id), limit=limit)]}


@app.post("/api/owners/{owner_id}/themes/{theme}/reset")
async def reset_theme(owner_id: str, theme: str):
    """Administrative reset of a theme's frequency to zero."""
    try:
        get_engine().reset_theme(_owner(owner_id), theme)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"message": f"Theme '{theme}' reset"}


@app.get("/api/owners/{owner_id}/emotions")
async def emotions(owner_id: str, days: float = 30):
    points = get_engine().emotional_trajectory(_owner(owner_id), days=days)
    return {"points": [p.to_dict() for p in points]}


@app.get("/api/owners/{owner_id}/stats")
async def stats(owner_id: str):
    return get_engine().get_stats(_owner(owner_id))


# --- Scheduler ---

@app.get("/api/scheduler")
async def scheduler_status():
    return get_scheduler().get_status()


@app.post("/api/scheduler/schedule")
async def scheduler_update(request: ScheduleUpdate):
    sched = get_scheduler()
    sched.reschedule(request.hour, request.minute)
    return sched.get_status()


@app.post("/api/scheduler/trigger")
async def scheduler_trigger():
    """Recluster every owner with new memory now."""
    return await get_scheduler().trigger_now()


# --- Run ---

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
