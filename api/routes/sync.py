"""
Sync API endpoints.

Inspect providers and per-account sync states, enable or disable a state,
run a sync on demand and read the run history.
"""
from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from api.services.errors import NotFoundError, SyncInProgressError, UnknownSourceError
from api.services.sync_service import get_sync_service

router = APIRouter(prefix="/api/sync", tags=["sync"])


class StateUpdateBody(BaseModel):
    enabled: bool


class TriggerBody(BaseModel):
    account_id: Optional[str] = None


@router.get("/providers")
async def list_providers():
    """Registered sync providers and their defaults."""
    providers = get_sync_service().available_providers()
    return {"providers": [p.to_dict() for p in providers], "count": len(providers)}


@router.get("/states")
async def list_states():
    """Every (source, account) sync state with its schedule and last error."""
    states = get_sync_service().list_states()
    return {"states": [s.to_dict() for s in states], "count": len(states)}


@router.get("/states/{state_id}")
async def get_state(state_id: str):
    try:
        return get_sync_service().get_state(state_id).to_dict()
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.patch("/states/{state_id}")
async def update_state(state_id: str, body: StateUpdateBody):
    """Enable or disable a sync. Re-enabled syncs are due immediately."""
    try:
        return get_sync_service().enable_sync(state_id, body.enabled).to_dict()
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{source}/trigger")
def trigger_sync(source: str, body: Optional[TriggerBody] = None):
    """
    Run a sync now for one source account.

    Blocks until the provider finishes. Provider failures are reported in
    the response (and on the sync state), not as HTTP errors.
    """
    account_id = body.account_id if body else None
    try:
        run = get_sync_service().trigger_sync(source, account_id)
    except UnknownSourceError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SyncInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return run.to_dict()


@router.get("/states/{state_id}/logs")
async def list_state_logs(
    state_id: str,
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    try:
        logs = get_sync_service().get_logs(state_id, limit=limit, offset=offset)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"logs": [log.to_dict() for log in logs], "count": len(logs)}


@router.get("/logs/recent")
async def recent_logs(limit: int = Query(default=20, ge=1, le=200)):
    logs = get_sync_service().recent_logs(limit=limit)
    return {"logs": [log.to_dict() for log in logs], "count": len(logs)}
