from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from . import config, store
from .errors import PreconditionError
from .manager import CampaignManager
from .models import Criteria, Pacing

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

manager = CampaignManager()


def get_manager() -> CampaignManager:
    return manager


def auth(creds: Optional[HTTPAuthorizationCredentials] = Depends(security)):
    if not creds or not creds.credentials or creds.credentials != config.API_TOKEN:
        raise HTTPException(status_code=401, detail="Unauthorized")


PRECONDITION_STATUS = {
    "incomplete_criteria": 400,
    "channel_not_configured": 409,
    "channel_not_connected": 409,
    "already_running": 409,
    "quota_exhausted": 429,
}


def _precondition_http(e: PreconditionError) -> HTTPException:
    return HTTPException(
        status_code=PRECONDITION_STATUS.get(e.code, 400),
        detail={"code": e.code, "message": e.message},
    )


class CampaignStart(BaseModel):
    category: str
    location: str
    template: str
    pacing_interval_seconds: Optional[float] = Field(None, ge=0)
    daily_cap: Optional[int] = Field(None, ge=1)
    min_yield: Optional[int] = Field(None, ge=1)


class ChannelConfig(BaseModel):
    instance_name: str


app = FastAPI(title="Prospecting Engine API")

_allow_origins = [o.strip() for o in (config.CORS_ALLOW_ORIGINS or "").split(",") if o.strip()]
if not _allow_origins:
    _allow_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allow_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["Authorization", "Content-Type"],
    expose_headers=["Content-Type"],
)


@app.on_event("startup")
def _startup():
    store.init_db()


@app.on_event("shutdown")
def _shutdown():
    manager.stop_all()


@app.get("/v1/health")
def health_root():
    return {
        "ok": True,
        "service": "Prospecting Engine API",
        "time": store.now_iso(),
        "places_configured": bool(config.GOOGLE_MAPS_API_KEY),
        "channel_configured": bool(config.EVOLUTION_API_URL),
    }


# ---- channel ----


@app.put("/v1/tenants/{tenant_id}/channel", dependencies=[Depends(auth)])
def put_channel(tenant_id: str, body: ChannelConfig):
    name = body.instance_name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="instance_name is required")
    store.set_channel_instance(tenant_id, name, status=None)
    return store.get_channel_instance(tenant_id)


@app.get("/v1/tenants/{tenant_id}/channel", dependencies=[Depends(auth)])
def get_channel(tenant_id: str, mgr: CampaignManager = Depends(get_manager)):
    try:
        return mgr.channel_state(tenant_id)
    except PreconditionError as e:
        raise HTTPException(status_code=404, detail={"code": e.code, "message": e.message})


# ---- campaign control ----


def _status_payload(mgr: CampaignManager, tenant_id: str) -> Dict[str, Any]:
    runner = mgr.get(tenant_id)
    if runner is None:
        return {
            "status": {"running": False, "paused": False, "state": "idle", "quota_used_today": mgr.outcome_log.sent_today(tenant_id)},
            "leads": [],
            "logs": [],
        }
    return {"status": runner.status(), "leads": runner.lead_states(), "logs": runner.logs()}


@app.post("/v1/tenants/{tenant_id}/campaign/start", dependencies=[Depends(auth)])
def start_campaign(tenant_id: str, body: CampaignStart, mgr: CampaignManager = Depends(get_manager)):
    defaults = Pacing()
    pacing = Pacing(
        interval_seconds=defaults.interval_seconds if body.pacing_interval_seconds is None else body.pacing_interval_seconds,
        daily_cap=defaults.daily_cap if body.daily_cap is None else body.daily_cap,
        min_yield=defaults.min_yield if body.min_yield is None else body.min_yield,
    )
    criteria = Criteria(category=body.category.strip(), location=body.location.strip())
    try:
        mgr.start(tenant_id, criteria, body.template, pacing)
    except PreconditionError as e:
        logger.info("start rejected for tenant %s: %s", tenant_id, e.code)
        raise _precondition_http(e)
    return _status_payload(mgr, tenant_id)


def _control(mgr: CampaignManager, tenant_id: str, action: str) -> Dict[str, Any]:
    try:
        changed = getattr(mgr, action)(tenant_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="No campaign for tenant")
    out = _status_payload(mgr, tenant_id)
    out["changed"] = changed
    return out


@app.post("/v1/tenants/{tenant_id}/campaign/pause", dependencies=[Depends(auth)])
def pause_campaign(tenant_id: str, mgr: CampaignManager = Depends(get_manager)):
    return _control(mgr, tenant_id, "pause")


@app.post("/v1/tenants/{tenant_id}/campaign/resume", dependencies=[Depends(auth)])
def resume_campaign(tenant_id: str, mgr: CampaignManager = Depends(get_manager)):
    return _control(mgr, tenant_id, "resume")


@app.post("/v1/tenants/{tenant_id}/campaign/stop", dependencies=[Depends(auth)])
def stop_campaign(tenant_id: str, mgr: CampaignManager = Depends(get_manager)):
    return _control(mgr, tenant_id, "stop")


@app.get("/v1/tenants/{tenant_id}/campaign/status", dependencies=[Depends(auth)])
def campaign_status(tenant_id: str, mgr: CampaignManager = Depends(get_manager)):
    return _status_payload(mgr, tenant_id)


@app.get("/v1/tenants/{tenant_id}/quota", dependencies=[Depends(auth)])
def quota(tenant_id: str, mgr: CampaignManager = Depends(get_manager)):
    used = mgr.outcome_log.sent_today(tenant_id)
    runner = mgr.get(tenant_id)
    # an active run reports the cap it was started with
    cap = runner.status()["daily_cap"] if runner is not None and runner.running else config.DAILY_DISPATCH_CAP
    return {
        "used_today": used,
        "daily_cap": cap,
        "remaining": max(0, cap - used),
        "timezone": config.TENANT_TIMEZONE,
    }


# ---- run history + events ----


def _parse_runs_cursor(cursor: Optional[str]) -> Optional[Tuple[str, str]]:
    """Cursor format: <created_at>|<id>"""
    if not cursor:
        return None
    if "|" not in cursor:
        raise HTTPException(status_code=400, detail="Invalid cursor")
    created_at, rid = cursor.split("|", 1)
    if not created_at or not rid:
        raise HTTPException(status_code=400, detail="Invalid cursor")
    return created_at, rid


@app.get("/v1/tenants/{tenant_id}/campaign-runs", dependencies=[Depends(auth)])
def list_campaign_runs(tenant_id: str, limit: int = 50, cursor: Optional[str] = None):
    # newest first
    limit = max(1, min(int(limit or 50), 200))
    items, next_cursor = store.list_campaign_runs(tenant_id, limit=limit, cursor=_parse_runs_cursor(cursor))
    return {"items": items, "nextCursor": next_cursor}


@app.get("/v1/campaign-runs/{campaign_run_id}", dependencies=[Depends(auth)])
def campaign_run_get(campaign_run_id: str):
    cr = store.get_campaign_run(campaign_run_id)
    if not cr:
        raise HTTPException(404, "Campaign run not found")
    return cr


@app.get("/v1/campaign-runs/{campaign_run_id}/events", dependencies=[Depends(auth)])
def poll_events(campaign_run_id: str, cursor: Optional[str] = None, limit: int = 200):
    rows = store.list_events(campaign_run_id)

    # naive cursor: event id
    start = 0
    if cursor:
        for i, r in enumerate(rows):
            if r["id"] == cursor:
                start = i + 1
                break
    sliced = rows[start : start + limit]
    next_cursor = sliced[-1]["id"] if sliced else None
    return {"events": sliced, "nextCursor": next_cursor}


@app.get("/v1/campaign-runs/{campaign_run_id}/events/stream")
def stream_events(campaign_run_id: str, creds: Optional[HTTPAuthorizationCredentials] = Depends(security)):
    # SSE auth manually
    if not creds or creds.credentials != config.API_TOKEN:
        raise HTTPException(status_code=401, detail="Unauthorized")

    async def gen():
        last_id = None
        while True:
            rows = store.list_events(campaign_run_id)
            # emit only new
            to_emit: List[Dict[str, Any]] = []
            if last_id:
                seen = False
                for r in rows:
                    if seen:
                        to_emit.append(r)
                    if r["id"] == last_id:
                        seen = True
            else:
                to_emit = rows[-50:]
            for r in to_emit:
                last_id = r["id"]
                yield {"event": r["type"], "id": r["id"], "data": json.dumps(r)}
            await asyncio.sleep(config.WAIT_POLL_SECONDS)

    return EventSourceResponse(gen())


# ---- outcome log ----


@app.get("/v1/tenants/{tenant_id}/outcomes", dependencies=[Depends(auth)])
def list_outcomes(
    tenant_id: str,
    category: Optional[str] = None,
    location: Optional[str] = None,
    channel_valid: Optional[bool] = None,
    message_sent: Optional[bool] = None,
    lead_saved: Optional[bool] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    mgr: CampaignManager = Depends(get_manager),
):
    limit = max(1, min(int(limit or 50), 200))
    items, count = mgr.outcome_log.query(
        tenant_id,
        category=category,
        location=location,
        channel_valid=channel_valid,
        message_sent=message_sent,
        lead_saved=lead_saved,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
    )
    return {"items": items, "count": count}


@app.get("/v1/tenants/{tenant_id}/outcomes/stats", dependencies=[Depends(auth)])
def outcome_stats(tenant_id: str, mgr: CampaignManager = Depends(get_manager)):
    return mgr.outcome_log.stats(tenant_id)


@app.get("/v1/tenants/{tenant_id}/outcomes/history", dependencies=[Depends(auth)])
def dispatch_history(tenant_id: str, days: int = 7, mgr: CampaignManager = Depends(get_manager)):
    days = max(1, min(int(days or 7), 90))
    return {"days": days, "items": mgr.outcome_log.dispatch_history(tenant_id, days=days)}
