"""Session lifecycle and fan-out across the domain synchronizers."""

from __future__ import annotations

import asyncio
import inspect
import logging
import secrets
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from caresync.core.audit import AuditSink, emit_audit
from caresync.core.config import SyncConfig
from caresync.core.errors import NetworkError
from caresync.sync.conflicts import ConflictResolver
from caresync.sync.credentials import SecureCredentialSync
from caresync.sync.devices import REJECTED_MESSAGE, DeviceTrustRegistry, TrustChangeResult
from caresync.sync.models import (
    CREDENTIALS_TABLE,
    DEVICES_TABLE,
    PROFILES_TABLE,
    SESSIONS_TABLE,
    SETTINGS_TABLE,
    Device,
    SecurityLevel,
    SyncContext,
    SyncSession,
    TriggerReason,
    TrustLevel,
    now_iso,
)
from caresync.sync.queue import SyncQueue
from caresync.sync.records import ProfileSyncService, RecordSyncService, SettingsSyncService
from caresync.sync.store import ChangeFeed, ChangeNotification, RecordStore

logger = logging.getLogger("sync.manager")

SyncHealth = str


class SyncTriggerEvent(BaseModel):
    trigger: TriggerReason
    user_id: str
    device_id: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=now_iso)


class TriggerResult(BaseModel):
    success: bool
    results: list[dict[str, Any]] = Field(default_factory=list)
    conflicts: int = 0
    message: Optional[str] = None


class InitResult(BaseModel):
    success: bool
    session: Optional[SyncSession] = None
    device: Optional[Device] = None
    login: Optional[TriggerResult] = None
    message: Optional[str] = None


class SyncStatus(BaseModel):
    is_online: bool
    cloud_connected: bool
    last_sync: Optional[str] = None
    pending_operations: int = 0
    device_count: int = 0
    pending_conflicts: int = 0
    sync_health: SyncHealth = "healthy"


SyncEventListener = Callable[[SyncTriggerEvent], Any]


async def _wait_stop_or_timeout(stop_event: asyncio.Event, timeout_sec: float) -> bool:
    if timeout_sec <= 0:
        return stop_event.is_set()
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout_sec)
        return True
    except asyncio.TimeoutError:
        return False


class SyncManager:
    def __init__(
        self,
        store: RecordStore,
        queue: SyncQueue,
        resolver: ConflictResolver,
        registry: DeviceTrustRegistry,
        credentials: SecureCredentialSync,
        settings: SettingsSyncService,
        profiles: ProfileSyncService,
        cfg: Optional[SyncConfig] = None,
        feed: Optional[ChangeFeed] = None,
        audit: Optional[AuditSink] = None,
    ):
        self.store = store
        self.queue = queue
        self.resolver = resolver
        self.registry = registry
        self.credentials = credentials
        self.settings = settings
        self.profiles = profiles
        self.cfg = cfg or SyncConfig()
        self.feed = feed
        self.audit = audit

        self.sessions: dict[str, SyncSession] = {}
        self.last_sync: dict[str, str] = {}
        self._listeners: dict[str, list[SyncEventListener]] = {}
        self._periodic: dict[str, tuple[asyncio.Task, asyncio.Event]] = {}
        self._feed_callbacks: dict[str, Callable] = {}

    # ---- session lifecycle ----

    async def initialize_sync(
        self,
        user_id: str,
        fingerprint: str,
        mfa_verified: bool = False,
        security_level: SecurityLevel = "standard",
        enable_periodic_sync: bool = True,
        periodic_interval_sec: Optional[int] = None,
    ) -> InitResult:
        device = await self.registry.register_device(user_id, fingerprint)
        login = await self.registry.record_login(device.device_id)
        if not login.success:
            return InitResult(success=False, device=device, message=login.message)

        session = SyncSession(
            user_id=user_id,
            device_id=device.device_id,
            session_token=secrets.token_urlsafe(32),
            security_level=security_level,
            mfa_verified=mfa_verified,
        )
        self.sessions[user_id] = session
        await self._register_session(session, active=True)

        if self.feed is not None and user_id not in self._feed_callbacks:
            callback = self._make_feed_callback(user_id)
            self._feed_callbacks[user_id] = callback
            self.feed.subscribe(user_id, callback)

        interval = self.cfg.periodic_interval_sec if periodic_interval_sec is None else periodic_interval_sec
        if enable_periodic_sync and interval > 0:
            self._start_periodic(user_id, interval)

        emit_audit(
            self.audit,
            "SYNC_SESSION_STARTED",
            user_id=user_id,
            device_id=device.device_id,
            security_level=security_level,
            mfa_verified=mfa_verified,
        )
        logger.info("sync_session_started user=%s device=%s", user_id, device.device_id)

        resumed = self.queue.pending_count(user_id, device.device_id)
        if resumed:
            logger.info("sync_resuming_queue user=%s pending=%s", user_id, resumed)
        result = await self.trigger_sync("login", user_id, device.device_id)
        return InitResult(success=True, session=session, device=await self.registry.get_device(device.device_id), login=result)

    async def _register_session(self, session: SyncSession, active: bool):
        row = session.model_dump(mode="json")
        row["is_active"] = active
        row["ended_at"] = None if active else now_iso()
        try:
            await self.store.upsert(SESSIONS_TABLE, session.session_token, row)
        except NetworkError as e:
            logger.warning("session_register_deferred user=%s error=%s", session.user_id, e)

    def get_session(self, user_id: str) -> Optional[SyncSession]:
        return self.sessions.get(user_id)

    async def handle_logout(self, user_id: str) -> dict:
        session = self.sessions.get(user_id)
        out = {"flushed": 0, "remaining": 0, "sensitive_pending": 0}
        if session is None:
            return out

        await self._notify(SyncTriggerEvent(trigger="logout", user_id=user_id, device_id=session.device_id))
        await self._stop_periodic(user_id)

        # Credential items only ever hold per-field ciphertext, so they are flushed
        # with the rest or stay queued for the next session.
        if not self.registry.is_revoked(session.device_id) and await self.store.ping():
            summary = await self.queue.drain(user_id=user_id, include_sensitive=True)
            out["flushed"] = summary.get("completed", 0)
        out["remaining"] = self.queue.pending_count(user_id)
        out["sensitive_pending"] = len(
            [i for i in self.queue.list_items(user_id=user_id, status="pending") if i.sensitive_data]
        )

        callback = self._feed_callbacks.pop(user_id, None)
        if self.feed is not None and callback is not None:
            self.feed.unsubscribe(user_id, callback)
        await self._register_session(session, active=False)

        self.credentials.forget_device(user_id)
        self.sessions.pop(user_id, None)
        self._listeners.pop(user_id, None)
        self.last_sync.pop(user_id, None)

        emit_audit(self.audit, "SYNC_SESSION_ENDED", user_id=user_id, device_id=session.device_id, reason="user_logout", **out)
        logger.info("sync_session_ended user=%s flushed=%s remaining=%s", user_id, out["flushed"], out["remaining"])
        return out

    async def revoke_device(self, device_id: str, reason: str = "user_request") -> TrustChangeResult:
        """Revoke and drop everything the device still had waiting to go out."""
        device = await self.registry.get_device(device_id)
        result = await self.registry.revoke(device_id, reason=reason)
        if not result.success or device is None:
            return result
        cancelled = self.queue.cancel_pending(
            device.user_id, device_id=device_id, include_conflicts=True, reason="device_revoked"
        )
        self.credentials.forget_device(device.user_id, device_id)
        session = self.sessions.get(device.user_id)
        if session is not None and session.device_id == device_id:
            await self._stop_periodic(device.user_id)
        logger.info("device_revoke_cleanup device=%s cancelled=%s", device_id, len(cancelled))
        return result

    async def shutdown(self) -> None:
        for user_id in list(self._periodic):
            await self._stop_periodic(user_id)
        self.queue.stop()

    # ---- periodic ----

    def _start_periodic(self, user_id: str, interval: int) -> None:
        current = self._periodic.get(user_id)
        if current is not None and not current[0].done():
            return
        stop_event = asyncio.Event()
        task = asyncio.create_task(self._periodic_loop(user_id, interval, stop_event), name=f"caresync_periodic_{user_id}")
        self._periodic[user_id] = (task, stop_event)

    async def _stop_periodic(self, user_id: str) -> None:
        entry = self._periodic.pop(user_id, None)
        if entry is None:
            return
        task, stop_event = entry
        stop_event.set()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("periodic_stop_error user=%s", user_id)

    async def _periodic_loop(self, user_id: str, interval: int, stop_event: asyncio.Event) -> None:
        logger.info("periodic_sync_started user=%s interval_sec=%s", user_id, interval)
        try:
            while not stop_event.is_set():
                if await _wait_stop_or_timeout(stop_event, interval):
                    break
                session = self.sessions.get(user_id)
                if session is None:
                    break
                try:
                    await self.trigger_sync("periodic", user_id, session.device_id)
                except Exception as e:
                    logger.exception("periodic_sync_failed user=%s error=%s", user_id, e)
        finally:
            logger.info("periodic_sync_stopped user=%s", user_id)

    # ---- triggers ----

    async def _device_rejected(self, user_id: str, device_id: str) -> bool:
        if await self.registry.rejects(user_id, device_id, "trigger_sync"):
            return True
        device = await self.registry.get_device(device_id)
        return device is None or device.user_id != user_id

    async def _run_service(self, kind: str, service: RecordSyncService, ctx: SyncContext) -> dict:
        result = await service.reconcile(ctx)
        entry: dict[str, Any] = {"type": kind, "success": result.ok}
        if result.ok:
            entry.update(result.value or {})
        else:
            entry["error"] = str(result.error)
        return entry

    async def trigger_sync(
        self,
        reason: TriggerReason,
        user_id: str,
        device_id: Optional[str] = None,
        context: Optional[dict] = None,
    ) -> TriggerResult:
        session = self.sessions.get(user_id)
        device_id = device_id or (session.device_id if session else None)
        if not device_id:
            return TriggerResult(success=False, message="no_active_session")
        if await self._device_rejected(user_id, device_id):
            return TriggerResult(success=False, message=REJECTED_MESSAGE)

        if session is not None:
            session.last_activity = now_iso()
        await self._notify(SyncTriggerEvent(trigger=reason, user_id=user_id, device_id=device_id, data=context or {}))
        ctx = SyncContext(user_id=user_id, device_id=device_id, session=session)

        results: list[dict[str, Any]] = []
        if reason != "profile_update":
            results.append(await self._run_service("settings", self.settings, ctx))
        if reason != "settings_change":
            results.append(await self._run_service("profile", self.profiles, ctx))

        if reason in ("login", "mfa_change"):
            level = await self.registry.get_trust_level(device_id)
            if level is not None and level.at_least(TrustLevel.TRUSTED):
                mfa = await self.credentials.sync_mfa_secrets(user_id, device_id)
                results.append(
                    {
                        "type": "mfa",
                        "success": mfa.success,
                        "credentials_synced": mfa.credentials_synced,
                        "conflicts": mfa.conflicts,
                        "errors": mfa.errors,
                    }
                )

        if await self.store.ping():
            await self.queue.drain(user_id=user_id, include_sensitive=True)
            await self.registry.flush()

        conflicts = sum(int(r.get("conflicts", 0) or 0) for r in results)
        success = all(r.get("success") for r in results)
        self.last_sync[user_id] = now_iso()
        ok_count = len([r for r in results if r.get("success")])

        emit_audit(
            self.audit,
            "SYNC_COMPLETED",
            user_id=user_id,
            device_id=device_id,
            trigger=reason,
            results=len(results),
            conflicts=conflicts,
            success=success,
        )
        logger.info("sync_completed trigger=%s user=%s ok=%s/%s conflicts=%s", reason, user_id, ok_count, len(results), conflicts)
        return TriggerResult(
            success=success,
            results=results,
            conflicts=conflicts,
            message=f"sync_completed {ok_count}/{len(results)}",
        )

    async def force_full_sync(self, user_id: str, device_id: Optional[str] = None) -> TriggerResult:
        for kind, service in (("settings", self.settings), ("profile", self.profiles)):
            forced = await service.force_sync_from_cloud(user_id)
            if not forced.ok:
                return TriggerResult(success=False, message=f"{kind}_force_failed: {forced.error}")
        return await self.trigger_sync("manual", user_id, device_id, {"full_sync": True, "forced": True})

    # ---- change feed ----

    def _make_feed_callback(self, user_id: str):
        async def _callback(change: ChangeNotification):
            await self.handle_change(change)

        return _callback

    async def handle_change(self, change: ChangeNotification) -> Optional[dict]:
        session = self.sessions.get(change.user_id)
        if session is None or change.device_id == session.device_id:
            return None

        ctx = SyncContext(user_id=change.user_id, device_id=session.device_id, session=session)
        if change.table == SETTINGS_TABLE:
            return await self._run_service("settings", self.settings, ctx)
        if change.table == PROFILES_TABLE:
            return await self._run_service("profile", self.profiles, ctx)
        if change.table == DEVICES_TABLE:
            await self.registry.hydrate(change.user_id, force=True)
            return {"type": "devices", "success": True}
        if change.table == CREDENTIALS_TABLE:
            level = await self.registry.get_trust_level(session.device_id)
            if level is not None and level.at_least(TrustLevel.TRUSTED):
                mfa = await self.credentials.sync_mfa_secrets(change.user_id, session.device_id)
                return {"type": "mfa", "success": mfa.success}
        return None

    # ---- events ----

    def subscribe_to_sync_events(self, user_id: str, callback: SyncEventListener) -> None:
        self._listeners.setdefault(user_id, []).append(callback)

    def unsubscribe_from_sync_events(self, user_id: str, callback: Optional[SyncEventListener] = None) -> None:
        if callback is None:
            self._listeners.pop(user_id, None)
            return
        self._listeners[user_id] = [cb for cb in self._listeners.get(user_id, []) if cb is not callback]

    async def _notify(self, event: SyncTriggerEvent) -> None:
        for callback in list(self._listeners.get(event.user_id, [])):
            try:
                out = callback(event)
                if inspect.isawaitable(out):
                    await out
            except Exception as e:
                logger.exception("sync_listener_failed trigger=%s error=%s", event.trigger, e)

    # ---- status ----

    def _health(self, online: bool, pending_conflicts: int) -> SyncHealth:
        if not online:
            return "offline"
        if pending_conflicts == 0:
            return "healthy"
        if pending_conflicts > self.cfg.health_error_threshold:
            return "error"
        return "warning"

    async def get_status(self, user_id: str) -> SyncStatus:
        online = await self.store.ping()
        pending_conflicts = self.resolver.pending_count(user_id)
        devices = await self.registry.list_devices(user_id, include_revoked=False)
        subscribed = self.feed is not None and self.feed.subscriber_count(user_id) > 0
        return SyncStatus(
            is_online=online,
            cloud_connected=online and (subscribed or user_id in self.sessions),
            last_sync=self.last_sync.get(user_id),
            pending_operations=self.queue.pending_count(user_id),
            device_count=len(devices),
            pending_conflicts=pending_conflicts,
            sync_health=self._health(online, pending_conflicts),
        )
