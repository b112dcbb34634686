from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal, Optional

from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from caresync.core.config import load_config
from caresync.runtime import Runtime, build_runtime
from caresync.sync.models import PROFILES_TABLE, SETTINGS_TABLE, TriggerReason
from caresync.sync.store import ChangeNotification

router = APIRouter(prefix="/api")
logger = logging.getLogger("web.api")

EVENT_RECENT_IDS_LIMIT = 500

_runtime: Runtime | None = None
_event_recent_ids: "OrderedDict[str, str]" = OrderedDict()
_event_state: dict[str, Any] = {"received_count": 0, "duplicate_count": 0, "handled_count": 0, "last_event_id": None}


class ResolveRequest(BaseModel):
    choice: Literal["take_local", "take_remote", "merge_fields", "manual_edit"]
    field_map: Optional[dict[str, Literal["local", "remote"]]] = None
    data: Optional[dict[str, Any]] = None
    device_id: Optional[str] = None


class TriggerRequest(BaseModel):
    reason: TriggerReason = "manual"
    device_id: Optional[str] = None
    full: bool = False


class RevokeRequest(BaseModel):
    reason: str = "user_request"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def set_runtime(runtime: Runtime | None) -> None:
    global _runtime
    _runtime = runtime


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime(load_config())
    return _runtime


def _remember_event(event_id: str) -> bool:
    """Return False when the id was already seen."""
    if event_id in _event_recent_ids:
        return False
    _event_recent_ids[event_id] = _now_iso()
    while len(_event_recent_ids) > EVENT_RECENT_IDS_LIMIT:
        _event_recent_ids.popitem(last=False)
    return True


async def _build_readiness_payload() -> dict:
    checks: dict[str, bool] = {
        "config_load": False,
        "database_parent_ready": False,
        "log_parent_ready": False,
        "runtime_ready": False,
        "store_reachable": False,
    }
    warnings: list[str] = []
    errors: list[str] = []

    cfg = None
    try:
        cfg = load_config()
        checks["config_load"] = True
    except Exception as e:
        errors.append(f"config_load_failed: {e}")

    if cfg is not None:
        try:
            Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)
            checks["database_parent_ready"] = True
        except Exception as e:
            errors.append(f"database_parent_unavailable: {e}")

        try:
            Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
            checks["log_parent_ready"] = True
        except Exception as e:
            errors.append(f"log_parent_unavailable: {e}")

    try:
        runtime = get_runtime()
        checks["runtime_ready"] = True
        checks["store_reachable"] = bool(await runtime.store.ping())
    except Exception as e:
        errors.append(f"runtime_unavailable: {e}")

    if checks["runtime_ready"] and not checks["store_reachable"]:
        # Local-only mode still serves reads and queues writes.
        warnings.append("store_unreachable")

    ok = (
        checks["config_load"]
        and checks["database_parent_ready"]
        and checks["log_parent_ready"]
        and checks["runtime_ready"]
    )
    return {
        "ok": ok,
        "checked_at": _now_iso(),
        "checks": checks,
        "warnings": warnings,
        "errors": errors,
    }


@router.get("/healthz")
def healthz():
    return {
        "ok": True,
        "status": "alive",
        "checked_at": _now_iso(),
    }


@router.get("/readyz")
async def readyz():
    payload = await _build_readiness_payload()
    return JSONResponse(status_code=200 if payload["ok"] else 503, content=payload)


@router.get("/status/{user_id}")
async def sync_status(user_id: str):
    runtime = get_runtime()
    status = await runtime.manager.get_status(user_id)
    return {
        "ok": True,
        "user_id": user_id,
        "checked_at": _now_iso(),
        "status": status.model_dump(mode="json"),
        "queue": runtime.queue.stats(user_id),
        "conflicts": runtime.resolver.get_conflict_stats(user_id),
    }


@router.get("/conflicts/{user_id}")
def list_conflicts(user_id: str):
    runtime = get_runtime()
    items = runtime.resolver.get_pending_conflicts(user_id)
    return {
        "ok": True,
        "count": len(items),
        "items": [c.model_dump(mode="json") for c in items],
    }


@router.post("/conflicts/{user_id}/{conflict_id}/resolve")
async def resolve_conflict(user_id: str, conflict_id: str, body: ResolveRequest):
    runtime = get_runtime()
    conflict = runtime.resolver.get_conflict(user_id, conflict_id)
    if conflict is None:
        raise HTTPException(status_code=404, detail="conflict_not_found")

    services = {SETTINGS_TABLE: runtime.settings, PROFILES_TABLE: runtime.profiles}
    service = services.get(conflict.table_name)
    if service is not None:
        result = await service.resolve_manually(
            user_id,
            conflict_id,
            body.choice,
            device_id=body.device_id,
            field_map=body.field_map,
            data=body.data,
        )
    else:
        result = runtime.resolver.resolve_conflict_manually(
            conflict_id, user_id, body.choice, field_map=body.field_map, data=body.data
        )
    if not result.success:
        raise HTTPException(status_code=400, detail=result.error or "resolution_failed")
    logger.info("conflict_resolved_via_api id=%s choice=%s", conflict_id, body.choice)
    return {"ok": True, "resolution": result.model_dump(mode="json")}


@router.get("/devices/{user_id}")
async def list_devices(user_id: str):
    runtime = get_runtime()
    devices = await runtime.registry.list_devices(user_id)
    return {
        "ok": True,
        "count": len(devices),
        "items": [d.model_dump(mode="json") for d in devices],
    }


@router.post("/devices/{device_id}/revoke")
async def revoke_device(device_id: str, body: Optional[RevokeRequest] = None):
    runtime = get_runtime()
    device = await runtime.registry.get_device(device_id)
    if device is None:
        raise HTTPException(status_code=404, detail="device_unknown")
    result = await runtime.manager.revoke_device(device_id, reason=(body.reason if body else "user_request"))
    return {"ok": True, "result": result.model_dump(mode="json")}


@router.post("/sync/{user_id}/trigger")
async def trigger_sync(user_id: str, body: Optional[TriggerRequest] = None):
    runtime = get_runtime()
    req = body or TriggerRequest()
    if req.full:
        result = await runtime.manager.force_full_sync(user_id, req.device_id)
    else:
        result = await runtime.manager.trigger_sync(req.reason, user_id, req.device_id)
    status_code = 200 if result.success else 409
    return JSONResponse(status_code=status_code, content={"ok": result.success, "result": result.model_dump(mode="json")})


@router.post("/events/change")
async def change_event(change: ChangeNotification):
    _event_state["received_count"] += 1
    _event_state["last_event_id"] = change.event_id
    if not _remember_event(change.event_id):
        _event_state["duplicate_count"] += 1
        logger.info("change_event_duplicate id=%s", change.event_id)
        return {"ok": True, "duplicate": True, "handled": False}

    runtime = get_runtime()
    outcome = await runtime.manager.handle_change(change)
    if outcome is not None:
        _event_state["handled_count"] += 1
    return {"ok": True, "duplicate": False, "handled": outcome is not None, "result": outcome}
