import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Request

from clansync.clans import ClanRegistry, clan_key, get_registry
from clansync.config import get_settings
from clansync.database import Database
from clansync.errors import ConfigurationError, MalformedRecordError, RemoteApiError
from clansync.log import configure_logging
from clansync.models import OPERATION_ALL, OPERATION_PLAYERS, OPERATIONS
from clansync.orchestrator import SyncOrchestrator, build_orchestrator

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="clansync")

# Built on first request so importing the app has no side effects.
registry: Optional[ClanRegistry] = None
db: Optional[Database] = None
orchestrator: Optional[SyncOrchestrator] = None


def _get_registry() -> ClanRegistry:
    global registry
    if registry is None:
        registry = get_registry()
    return registry


def _get_db() -> Database:
    global db
    if db is None:
        db = Database(get_settings().db_path)
    return db


def _get_orchestrator() -> SyncOrchestrator:
    global orchestrator
    if orchestrator is None:
        orchestrator = build_orchestrator(get_settings(), db=_get_db(), registry=_get_registry())
    return orchestrator


def _check_operation(operation: str) -> str:
    op = str(operation or "").strip().lower()
    allowed = OPERATIONS + (OPERATION_ALL,)
    if op not in allowed:
        raise HTTPException(status_code=400, detail=f"operation must be one of {', '.join(allowed)}")
    return op


@app.get("/api/clans")
async def list_clans() -> dict:
    reg = _get_registry()
    try:
        default_tag = reg.default_clan().tag
    except ConfigurationError:
        default_tag = None
    clans = [clan.to_dict() for clan in reg.list_all()]
    return {"default": default_tag, "clans": clans, "count": len(clans)}


@app.post("/api/sync/{tag}")
async def sync_clan(tag: str, operation: str = OPERATION_PLAYERS) -> dict:
    op = _check_operation(operation)
    orch = _get_orchestrator()
    try:
        if op == OPERATION_ALL:
            outcome = await asyncio.to_thread(orch.sync_full_update, None, None, clan_key(tag))
        else:
            outcome = await asyncio.to_thread(orch.sync_one_clan, clan_key(tag), op)
    except ConfigurationError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return outcome.to_dict()


@app.post("/api/sync")
async def sync_all(operation: str = OPERATION_PLAYERS) -> dict:
    op = _check_operation(operation)
    orch = _get_orchestrator()
    if op == OPERATION_ALL:
        full = await asyncio.to_thread(orch.sync_full_update)
        return full.to_dict()
    batch = await asyncio.to_thread(orch.sync_all_clans, op)
    return batch.to_dict()


@app.post("/api/clans/{tag}/players")
async def register_player(tag: str, request: Request) -> dict:
    try:
        payload = await request.json()
    except Exception:
        payload = {}
    payload = payload if isinstance(payload, dict) else {}
    player = str(payload.get("player") or "").strip()
    user_id = str(payload.get("user_id") or "").strip()
    if not player:
        raise HTTPException(status_code=400, detail="player is required")

    orch = _get_orchestrator()
    try:
        result = await asyncio.to_thread(orch.register_player, clan_key(tag), player, user_id)
    except ConfigurationError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RemoteApiError as e:
        status = 404 if e.status_code == 404 else 502
        raise HTTPException(status_code=status, detail=str(e))
    except MalformedRecordError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"ok": True, "player_id": result.player_id, "action": result.action}


@app.get("/api/clans/{tag}/battle-stats")
async def clan_battle_stats(tag: str, days: int = 30) -> dict:
    safe_days = max(1, min(days, 365))
    try:
        clan = _get_registry().resolve(clan_key(tag))
    except ConfigurationError as e:
        raise HTTPException(status_code=404, detail=str(e))

    start = (datetime.now(timezone.utc) - timedelta(days=safe_days)).isoformat()
    try:
        players = _get_db().get_clan_battle_player_stats(clan.clan_id, start=start)
    except Exception as e:
        logger.exception("Battle stats query failed for %s", clan.tag)
        raise HTTPException(status_code=500, detail=f"Failed to load battle stats: {str(e)}")
    return {
        "clan": clan.to_dict(),
        "days": safe_days,
        "players": players,
        "count": len(players),
    }
