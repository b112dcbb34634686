"""Settings and profile synchronizers.

A local edit runs through three stages, each returning a ``Result``:
apply-local (optimistic write to the SQLite record cache), enqueue-remote
(diff against the last known remote snapshot goes into the queue) and
reconcile-on-response (drain, then fold the store's answer back into the
cache). Version mismatches come back through the queue's conflict hook and
are settled by the resolver.
"""

from __future__ import annotations

import copy
import json
import logging
from typing import Any, Optional

from caresync.core.audit import AuditSink, emit_audit
from caresync.core.config import SyncConfig
from caresync.core.errors import NetworkError, Result, SyncError, TrustInsufficientError, ValidationError
from caresync.sync.conflicts import ConflictResolver
from caresync.sync.db import get_conn, init_db
from caresync.sync.devices import REJECTED_MESSAGE, DeviceTrustRegistry
from caresync.sync.models import (
    EVENTS_TABLE,
    FIELD_TIMESTAMPS_KEY,
    PROFILES_TABLE,
    SETTINGS_TABLE,
    ConflictRecord,
    ConflictResolution,
    ProfilePayload,
    SettingsPayload,
    SyncContext,
    SyncQueueItem,
    business_fields,
    is_metadata_key,
    now_iso,
    record_version,
)
from caresync.sync.queue import SyncQueue

logger = logging.getLogger("sync.records")


class RecordSyncService:
    table_name = ""
    payload_type: Any = None
    defaults: dict[str, Any] = {}

    def __init__(
        self,
        db_path: str,
        queue: SyncQueue,
        resolver: ConflictResolver,
        registry: Optional[DeviceTrustRegistry] = None,
        cfg: Optional[SyncConfig] = None,
        audit: Optional[AuditSink] = None,
    ):
        self.db_path = db_path
        self.queue = queue
        self.store = queue.store
        self.resolver = resolver
        self.registry = registry
        self.cfg = cfg or SyncConfig()
        self.audit = audit
        self.last_sync: dict[str, str] = {}
        self._pass_conflicts: dict[str, int] = {}

        init_db(self.db_path)
        self.queue.subscribe(self._on_queue_event)
        self.queue.set_conflict_handler(self.table_name, self._on_conflict)

    # ---- local cache ----

    def _db(self):
        return get_conn(self.db_path)

    def _load(self, record_id: str) -> tuple[dict, Optional[dict]]:
        conn = self._db()
        row = conn.execute(
            "SELECT data_json, snapshot_json FROM local_records WHERE table_name=? AND record_id=?",
            (self.table_name, record_id),
        ).fetchone()
        conn.close()
        if row is None:
            return {}, None
        data = json.loads(row["data_json"] or "{}")
        snapshot = json.loads(row["snapshot_json"]) if row["snapshot_json"] else None
        return data, snapshot

    def _save(self, record_id: str, data: dict, snapshot: Optional[dict]):
        conn = self._db()
        conn.execute(
            """
            INSERT INTO local_records(table_name,record_id,data_json,snapshot_json,updated_at)
            VALUES (?,?,?,?,CURRENT_TIMESTAMP)
            ON CONFLICT(table_name,record_id) DO UPDATE SET
              data_json=excluded.data_json,
              snapshot_json=excluded.snapshot_json,
              updated_at=CURRENT_TIMESTAMP
            """,
            (
                self.table_name,
                record_id,
                json.dumps(data, ensure_ascii=False, default=str),
                json.dumps(snapshot, ensure_ascii=False, default=str) if snapshot is not None else None,
            ),
        )
        conn.commit()
        conn.close()

    def _clear(self, record_id: str):
        conn = self._db()
        conn.execute("DELETE FROM local_records WHERE table_name=? AND record_id=?", (self.table_name, record_id))
        conn.commit()
        conn.close()

    def get_local(self, user_id: str) -> dict:
        data, _snapshot = self._load(user_id)
        if not data:
            return dict(copy.deepcopy(self.defaults), user_id=user_id)
        return data

    async def _reject_revoked(self, ctx: SyncContext, action: str) -> Optional[Result]:
        if self.registry is None:
            return None
        if await self.registry.rejects(ctx.user_id, ctx.device_id, action):
            return Result.failure(TrustInsufficientError(REJECTED_MESSAGE))
        return None

    # ---- pipeline stages ----

    def apply_local(self, ctx: SyncContext, partial: dict) -> Result[dict]:
        if not isinstance(partial, dict) or not partial:
            return Result.failure(ValidationError("empty_update"))
        meta = sorted(k for k in partial if is_metadata_key(k) or k == "user_id")
        if meta:
            return Result.failure(ValidationError("metadata_fields_not_writable", fields=meta))

        data, snapshot = self._load(ctx.user_id)
        updated = copy.deepcopy(data) if data else {"user_id": ctx.user_id}
        stamp = now_iso()
        field_ts = dict(updated.get(FIELD_TIMESTAMPS_KEY) or {})
        for key, value in partial.items():
            if updated.get(key) != value or key not in updated:
                field_ts[key] = stamp
            updated[key] = copy.deepcopy(value)
        updated[FIELD_TIMESTAMPS_KEY] = field_ts
        updated["updated_at"] = stamp
        updated["device_id"] = ctx.device_id
        self._save(ctx.user_id, updated, snapshot)
        return Result.success(updated)

    def _diff_against(self, local: dict, snapshot: Optional[dict]) -> dict:
        base = business_fields(snapshot)
        return {k: copy.deepcopy(v) for k, v in business_fields(local).items() if k not in base or base[k] != v}

    def _payload(self, fields: dict):
        return self.payload_type(fields=fields)

    def enqueue_remote(
        self,
        ctx: SyncContext,
        local: dict,
        snapshot: Optional[dict],
        broadcast: bool = False,
        expected_version: Optional[int] = None,
    ) -> Result[Optional[SyncQueueItem]]:
        changed = self._diff_against(local, snapshot)
        if snapshot is not None and not changed:
            return Result.success(None)

        fields = changed if snapshot is not None else business_fields(local)
        fields["user_id"] = ctx.user_id
        local_ts = local.get(FIELD_TIMESTAMPS_KEY) or {}
        fields[FIELD_TIMESTAMPS_KEY] = {k: local_ts[k] for k in sorted(fields) if k in local_ts}
        if local.get("updated_at"):
            fields["updated_at"] = local["updated_at"]

        version = expected_version if expected_version is not None else (record_version(snapshot) if snapshot else None)
        try:
            item = self.queue.enqueue(
                {
                    "user_id": ctx.user_id,
                    "device_id": ctx.device_id,
                    "operation_type": "update" if snapshot is not None else "create",
                    "table_name": self.table_name,
                    "record_id": ctx.user_id,
                    "payload": self._payload(fields),
                    "expected_version": version,
                    "conflict_strategy": self.cfg.default_conflict_strategy,
                    "metadata": {"broadcast": bool(broadcast)},
                }
            )
        except SyncError as e:
            return Result.failure(e)
        return Result.success(item)

    async def reconcile_on_response(self, ctx: SyncContext) -> Result[dict]:
        if not await self.store.ping():
            return Result.success({"offline": True, "pending": self.queue.pending_count(ctx.user_id)})
        summary = await self.queue.drain(user_id=ctx.user_id, include_sensitive=False)
        self.last_sync[ctx.user_id] = now_iso()
        return Result.success(summary)

    async def update(self, ctx: SyncContext, partial: dict, broadcast_to_other_devices: bool = False) -> Result[dict]:
        rejected = await self._reject_revoked(ctx, f"update:{self.table_name}")
        if rejected is not None:
            return rejected
        data, snapshot = self._load(ctx.user_id)
        if not data and snapshot is None:
            # First edit on this device: start from the remote copy when there is one.
            try:
                remote = await self.store.get(self.table_name, ctx.user_id)
            except NetworkError:
                remote = None
            if remote is not None:
                self._save(ctx.user_id, copy.deepcopy(remote), copy.deepcopy(remote))

        applied = self.apply_local(ctx, partial)
        if not applied.ok:
            return applied
        _data, snapshot = self._load(ctx.user_id)
        queued = self.enqueue_remote(ctx, applied.value, snapshot, broadcast=broadcast_to_other_devices)
        if not queued.ok:
            logger.error("record_enqueue_failed table=%s user=%s error=%s", self.table_name, ctx.user_id, queued.error)
            return Result(value=applied.value, error=queued.error)
        reconciled = await self.reconcile_on_response(ctx)
        if not reconciled.ok:
            return Result(value=applied.value, error=reconciled.error)
        return Result.success(self.get_local(ctx.user_id))

    # ---- reconciliation ----

    async def reconcile(self, ctx: SyncContext) -> Result[dict]:
        """Pull the remote copy and bring local, snapshot and queue into agreement."""
        rejected = await self._reject_revoked(ctx, f"reconcile:{self.table_name}")
        if rejected is not None:
            return rejected
        summary = {"table": self.table_name, "pulled": 0, "pushed": 0, "conflicts": 0, "offline": False}
        self._pass_conflicts[ctx.user_id] = 0
        try:
            remote = await self.store.get(self.table_name, ctx.user_id)
        except NetworkError:
            summary["offline"] = True
            return Result.success(summary)

        local, snapshot = self._load(ctx.user_id)
        pending = self.queue.list_items(user_id=ctx.user_id, table_name=self.table_name, record_id=ctx.user_id)
        has_pending = any(i.status in ("pending", "processing", "conflict") for i in pending)

        if has_pending:
            pass
        elif remote is None:
            if business_fields(local):
                queued = self.enqueue_remote(ctx, local, None)
                if not queued.ok:
                    return Result.failure(queued.error)
                summary["pushed"] += 1
        elif not local:
            self._save(ctx.user_id, copy.deepcopy(remote), copy.deepcopy(remote))
            summary["pulled"] += 1
        else:
            local_changed = bool(self._diff_against(local, snapshot)) if snapshot is not None else True
            remote_changed = snapshot is None or record_version(remote) != record_version(snapshot)
            if remote_changed and not local_changed:
                self._save(ctx.user_id, copy.deepcopy(remote), copy.deepcopy(remote))
                summary["pulled"] += 1
            elif local_changed and not remote_changed:
                queued = self.enqueue_remote(ctx, local, snapshot)
                if not queued.ok:
                    return Result.failure(queued.error)
                summary["pushed"] += 1
            elif local_changed and remote_changed:
                await self._settle(ctx.user_id, ctx.device_id, local, remote, snapshot, self.cfg.default_conflict_strategy)
                summary["pulled"] += 1

        drained = await self.reconcile_on_response(ctx)
        if drained.ok and drained.value and drained.value.get("offline"):
            summary["offline"] = True
        summary["conflicts"] = self._pass_conflicts.pop(ctx.user_id, 0)
        return Result.success(summary)

    async def _settle(
        self,
        user_id: str,
        device_id: str,
        local: dict,
        remote: dict,
        snapshot: Optional[dict],
        strategy: Optional[str],
    ) -> Optional[ConflictRecord]:
        conflict = self.resolver.detect_conflict(
            user_id, self.table_name, user_id, local, remote, device_id, base_data=snapshot
        )
        if conflict is None:
            self._adopt_remote(user_id, local, remote)
            return None

        if conflict.conflict_type != "timestamp_conflict":
            self._pass_conflicts[user_id] = self._pass_conflicts.get(user_id, 0) + 1
        resolution = self.resolver.resolve_conflict_automatically(conflict, strategy=strategy)
        if resolution.success:
            self._apply_resolution(user_id, device_id, resolution.resolved_data or {}, remote)
        return conflict

    def _adopt_remote(self, user_id: str, local: dict, remote: dict):
        merged = copy.deepcopy(local)
        merged["version"] = record_version(remote)
        if business_fields(local) == business_fields(remote):
            merged = copy.deepcopy(remote)
        self._save(user_id, merged, copy.deepcopy(remote))

    def _apply_resolution(self, user_id: str, device_id: str, resolved: dict, remote: dict):
        self.queue.cancel_pending(user_id, self.table_name, user_id, include_conflicts=True, reason="superseded_by_resolution")
        merged = copy.deepcopy(resolved)
        merged["version"] = record_version(remote)
        self._save(user_id, merged, copy.deepcopy(remote))
        ctx = SyncContext(user_id=user_id, device_id=device_id)
        queued = self.enqueue_remote(ctx, merged, remote, expected_version=record_version(remote))
        if not queued.ok:
            logger.error("resolution_enqueue_failed table=%s user=%s error=%s", self.table_name, user_id, queued.error)

    async def _on_conflict(self, item: SyncQueueItem, remote: Optional[dict]) -> Optional[str]:
        local, snapshot = self._load(item.user_id)
        if remote is None:
            # Remote record vanished; the local copy becomes a fresh create.
            self.queue.cancel_pending(item.user_id, self.table_name, item.record_id, include_conflicts=True, reason="remote_missing")
            self._save(item.user_id, local, None)
            self.enqueue_remote(SyncContext(item.user_id, item.device_id), local, None)
            return None

        conflict = await self._settle(item.user_id, item.device_id, local, remote, snapshot, item.conflict_strategy)
        return conflict.conflict_id if conflict is not None else None

    async def _on_queue_event(self, event: str, item: SyncQueueItem, detail: dict):
        if item.table_name != self.table_name or event != "completed":
            return
        result = detail.get("result")
        if not isinstance(result, dict):
            return
        local, _snapshot = self._load(item.user_id)
        if business_fields(local) == business_fields(result):
            merged = copy.deepcopy(result)
            merged[FIELD_TIMESTAMPS_KEY] = local.get(FIELD_TIMESTAMPS_KEY) or result.get(FIELD_TIMESTAMPS_KEY) or {}
        else:
            merged = copy.deepcopy(local)
            merged["version"] = record_version(result)
        self._save(item.user_id, merged, copy.deepcopy(result))

        if item.metadata.get("broadcast"):
            await self._broadcast(item, result)

    async def _broadcast(self, item: SyncQueueItem, result: dict):
        try:
            await self.store.insert(
                EVENTS_TABLE,
                {
                    "user_id": item.user_id,
                    "source_device_id": item.device_id,
                    "table_name": self.table_name,
                    "record_id": item.record_id,
                    "event_type": "record_updated",
                    "version": record_version(result),
                    "created_at": now_iso(),
                },
            )
        except NetworkError as e:
            logger.warning("broadcast_failed table=%s user=%s error=%s", self.table_name, item.user_id, e)

    # ---- operator paths ----

    async def resolve_manually(
        self,
        user_id: str,
        conflict_id: str,
        choice: str,
        device_id: Optional[str] = None,
        field_map: Optional[dict[str, str]] = None,
        data: Optional[dict] = None,
    ) -> ConflictResolution:
        conflict = self.resolver.get_conflict(user_id, conflict_id)
        acting = device_id or (conflict.device_id if conflict is not None else None)
        if acting and await self._reject_revoked(SyncContext(user_id, acting), f"resolve:{self.table_name}") is not None:
            return ConflictResolution(success=False, conflict_id=conflict_id, error=REJECTED_MESSAGE)
        result = self.resolver.resolve_conflict_manually(conflict_id, user_id, choice, field_map=field_map, data=data)
        if result.success and conflict is not None:
            self._apply_resolution(user_id, device_id or conflict.device_id, result.resolved_data or {}, conflict.remote_data)
            ctx = SyncContext(user_id=user_id, device_id=device_id or conflict.device_id)
            await self.reconcile_on_response(ctx)
        return result

    async def force_sync_from_cloud(self, user_id: str) -> Result[Optional[dict]]:
        try:
            remote = await self.store.get(self.table_name, user_id)
        except NetworkError as e:
            return Result.failure(e)
        self.queue.cancel_pending(user_id, self.table_name, user_id, include_conflicts=True, reason="forced_from_cloud")
        if remote is None:
            self._clear(user_id)
        else:
            self._save(user_id, copy.deepcopy(remote), copy.deepcopy(remote))
        self.last_sync[user_id] = now_iso()
        logger.info("record_forced_from_cloud table=%s user=%s version=%s", self.table_name, user_id, record_version(remote))
        emit_audit(self.audit, "SYNC_COMPLETED", user_id=user_id, table=self.table_name, mode="force_from_cloud")
        return Result.success(remote)

    async def get_sync_status(self, user_id: str) -> dict:
        device_count = 0
        if self.registry is not None:
            device_count = len(await self.registry.list_devices(user_id, include_revoked=False))
        table_conflicts = [c for c in self.resolver.get_pending_conflicts(user_id) if c.table_name == self.table_name]
        return {
            "table": self.table_name,
            "is_enabled": True,
            "device_count": device_count,
            "pending_conflicts": len(table_conflicts),
            "pending_items": len(
                [i for i in self.queue.list_items(user_id=user_id, table_name=self.table_name) if i.status in ("pending", "processing")]
            ),
            "last_sync": self.last_sync.get(user_id),
        }


class SettingsSyncService(RecordSyncService):
    table_name = SETTINGS_TABLE
    payload_type = SettingsPayload
    defaults = {
        "theme": "light",
        "notifications": {"email": True, "sms": False, "push": True, "in_app": True},
        "security_preferences": {"session_timeout": 15, "require_mfa": True},
        "ui_preferences": {"sidebar_collapsed": False, "compact_view": False},
    }

    async def update_settings(
        self, user_id: str, partial: dict, device_id: str, broadcast_to_other_devices: bool = False
    ) -> Result[dict]:
        return await self.update(SyncContext(user_id, device_id), partial, broadcast_to_other_devices)


class ProfileSyncService(RecordSyncService):
    table_name = PROFILES_TABLE
    payload_type = ProfilePayload
    defaults = {"name": "", "avatar": None}

    async def update_profile(
        self, user_id: str, partial: dict, device_id: str, broadcast_to_other_devices: bool = False
    ) -> Result[dict]:
        return await self.update(SyncContext(user_id, device_id), partial, broadcast_to_other_devices)
