"""MEME MARKET: FastAPI REST API with the valuation scheduler."""
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from common.errors import InvalidArgument, NotFound, TransientStoreFailure
from common.logger import get_logger, new_trace_id
from common.models import MemeAsset, MemeContent, Portfolio, Valuation
from config.settings import CATEGORIES, VALUATION_JOB
from ingest.sources import make_engagement_source
from market.issuance import IssuanceService
from market.ranking import get_trending, sort_memes
from market.recompute import RecomputeLoop
from scheduler import JobScheduler
from storage.database import init_db, load_history
from storage.repository import load_asset, load_portfolio

logger = get_logger("api")


class ConnectionManager:
    """Manages active WebSocket connections and broadcasts messages."""

    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    async def broadcast(self, payload: dict):
        message = json.dumps(payload)
        dead = []
        for ws in self.active_connections:
            try:
                await ws.send_text(message)
            except Exception:
                dead.append(ws)
        for ws in dead:
            self.disconnect(ws)

    async def broadcast_valuation(self, valuation: Valuation):
        await self.broadcast({
            "type": "valuation_update",
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "valuation": valuation.model_dump(mode="json"),
        })


manager = ConnectionManager()

scheduler = JobScheduler()
recompute = RecomputeLoop(scheduler, engagement_source=make_engagement_source(),
                          on_commit=manager.broadcast_valuation)
issuance = IssuanceService(scheduler)
scheduler.register(VALUATION_JOB, recompute.run)


class CreateMemeRequest(MemeContent):
    initial_share_price: float
    creator_id: str
    creator_name: str


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    await recompute.rearm_active()
    yield
    await scheduler.shutdown()

app = FastAPI(title="MEME MARKET API", version="0.1.0", lifespan=lifespan)

app.add_middleware(CORSMiddleware,
    allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])


@app.middleware("http")
async def tag_request(request: Request, call_next):
    new_trace_id()
    return await call_next(request)

# ── API routes (on a shared router, mounted at both "/" and "/api") ───────────

router = APIRouter()

@router.get("/health")
def health():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat(),
            "pending_jobs": scheduler.pending}

@router.get("/categories")
def get_categories():
    return {"categories": CATEGORIES}

@router.post("/memes", status_code=201, response_model=MemeAsset)
async def create_meme(req: CreateMemeRequest):
    content = MemeContent(**req.model_dump(include=set(MemeContent.model_fields)))
    try:
        return await issuance.create_meme(content, req.initial_share_price,
                                          req.creator_id, req.creator_name)
    except InvalidArgument as e:
        raise HTTPException(400, str(e))
    except TransientStoreFailure as e:
        logger.error(f"❌ Issuance failed: {e}")
        raise HTTPException(503, "Store unavailable, try again")

@router.get("/memes/trending", response_model=List[MemeAsset])
async def trending(limit: int = 10, category: Optional[str] = None, sort_by: str = "trending"):
    memes = await get_trending(limit=limit, category=category)
    try:
        return sort_memes(memes, sort_by)
    except InvalidArgument as e:
        raise HTTPException(400, str(e))

@router.get("/memes/{meme_id}", response_model=MemeAsset)
async def get_meme(meme_id: str):
    loaded = await load_asset(meme_id)
    if loaded is None:
        raise HTTPException(404, f"Meme not found: {meme_id}")
    return loaded[0]

@router.get("/memes/{meme_id}/valuation", response_model=Valuation)
async def get_valuation(meme_id: str):
    """On-demand valuation preview; nothing is committed."""
    try:
        return await recompute.valuate(meme_id)
    except NotFound as e:
        raise HTTPException(404, str(e))

@router.post("/memes/{meme_id}/refresh")
async def trigger_refresh(meme_id: str, background_tasks: BackgroundTasks):
    """Manually trigger one valuation tick for a meme."""
    if await load_asset(meme_id) is None:
        raise HTTPException(404, f"Meme not found: {meme_id}")
    background_tasks.add_task(recompute.tick, meme_id)
    return {"status": "valuation tick triggered", "meme_id": meme_id}

@router.get("/history/{meme_id}")
async def get_history(meme_id: str, days: int = 30):
    df = await load_history(meme_id, days)
    if df.empty:
        return {"meme_id": meme_id, "history": [], "days": days}
    return {"meme_id": meme_id, "history": df.to_dict(orient="records"), "days": days}

@router.get("/portfolio/{user_id}", response_model=Portfolio)
async def get_portfolio(user_id: str):
    return await load_portfolio(user_id)

# Mount routes at root (for nginx) and at /api (for direct browser access)
app.include_router(router)
app.include_router(router, prefix="/api")

# ── WebSocket ─────────────────────────────────────────────────────────────────

@app.websocket("/ws/live")
async def websocket_live(websocket: WebSocket):
    """WebSocket endpoint; pushes valuation updates in real time."""
    await manager.connect(websocket)
    try:
        memes = await get_trending(limit=20)
        await websocket.send_text(json.dumps({
            "type": "trending_snapshot",
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "memes": [m.model_dump(mode="json") for m in memes],
        }))
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)
    except Exception:
        manager.disconnect(websocket)
