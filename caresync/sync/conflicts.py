"""Detection and resolution of divergent local/remote record versions.

``resolve_last_write_wins`` and ``merge_fields`` are pure: the same inputs
always produce the same merged object, so a resolution can be recomputed
safely when the write that carries it is retried.
"""

from __future__ import annotations

import copy
import json
import logging
import time
import uuid
from typing import Any, Callable, Iterable, Optional

from caresync.core.audit import AuditSink, emit_audit
from caresync.core.config import SyncConfig
from caresync.sync.db import get_conn, init_db
from caresync.sync.models import (
    FIELD_TIMESTAMPS_KEY,
    CandidateResolution,
    ConflictRecord,
    ConflictResolution,
    business_fields,
    is_metadata_key,
    parse_timestamp,
    record_timestamp,
    record_version,
)

logger = logging.getLogger("sync.conflicts")

CRITICAL_FIELDS = (
    "mfa_enabled",
    "mfa_secret",
    "encrypted_secret",
    "retell_config",
    "api_key",
    "password",
    "backup_codes",
)
HIGH_FIELDS = ("role", "permissions", "email")
MEDIUM_FIELDS = ("notifications", "preferences", "name")
# Conflicts touching these never resolve without the user.
MANUAL_ONLY_FIELDS = CRITICAL_FIELDS + ("role", "permissions")

DEFAULT_CANDIDATES: dict[str, CandidateResolution] = {
    "user_settings.theme": CandidateResolution(
        strategy="last_write_wins", confidence=0.9,
        description="Theme preferences follow the most recent edit", risk_level="low",
    ),
    "user_settings.notifications": CandidateResolution(
        strategy="field_level_merge", confidence=0.8,
        description="Notification toggles merge field by field", risk_level="low",
    ),
    "user_settings.retell_config": CandidateResolution(
        strategy="manual_merge", confidence=0.3,
        description="Voice agent credentials need manual review", risk_level="high",
    ),
    "user_profiles.name": CandidateResolution(
        strategy="last_write_wins", confidence=0.7,
        description="Name follows the most recent update", risk_level="medium",
    ),
    "user_profiles.avatar": CandidateResolution(
        strategy="last_write_wins", confidence=0.9,
        description="Avatar follows the most recent update", risk_level="low",
    ),
    "user_profiles.mfa_enabled": CandidateResolution(
        strategy="manual_merge", confidence=0.2,
        description="MFA changes need manual verification", risk_level="critical",
    ),
}

_MANUAL_STRATEGIES = ("manual_merge", "user_prompt")


def _matches(field: str, names: Iterable[str]) -> bool:
    """Whole snake_case segments only: ``user_role`` and ``password_hash`` match, ``parole_notes`` does not."""
    return any(
        field == name or field.startswith(name + "_") or field.endswith("_" + name) or f"_{name}_" in field
        for name in names
    )


def diff_keys(local: dict, remote: dict) -> list[str]:
    keys = set(local) | set(remote)
    return sorted(k for k in keys if local.get(k) != remote.get(k))


def assess_severity(conflicting_fields: list[str]) -> str:
    if any(_matches(f, CRITICAL_FIELDS) for f in conflicting_fields):
        return "critical"
    if any(f in HIGH_FIELDS for f in conflicting_fields):
        return "high"
    if any(f in MEDIUM_FIELDS for f in conflicting_fields):
        return "medium"
    return "low"


def is_auto_resolvable(conflicting_fields: list[str]) -> bool:
    return not any(_matches(f, MANUAL_ONLY_FIELDS) for f in conflicting_fields)


def _order_key(record: dict, device_id: Optional[str]) -> tuple:
    ts = record_timestamp(record)
    return (
        ts if ts is not None else float("-inf"),
        record_version(record),
        str(device_id or record.get("device_id") or ""),
    )


def resolve_last_write_wins(
    local: dict,
    remote: dict,
    local_device_id: Optional[str] = None,
    remote_device_id: Optional[str] = None,
) -> tuple[str, dict]:
    """Return ``(winner, data)`` where winner is ``"local"`` or ``"remote"``.

    Ordering is ``(updated_at, version, device_id)``. Local wins only when its
    key is strictly greater, so an exact tie goes to the remote copy.
    """
    if _order_key(local, local_device_id) > _order_key(remote, remote_device_id):
        return "local", copy.deepcopy(local)
    return "remote", copy.deepcopy(remote)


def _pick_field(field: str, local: dict, remote: dict, base: Optional[dict]) -> str:
    in_local, in_remote = field in local, field in remote
    if in_local and not in_remote:
        return "local"
    if in_remote and not in_local:
        return "remote"
    if local.get(field) == remote.get(field):
        return "remote"

    if base is not None:
        local_changed = local.get(field) != base.get(field)
        remote_changed = remote.get(field) != base.get(field)
        if local_changed and not remote_changed:
            return "local"
        if remote_changed and not local_changed:
            return "remote"

    lt = parse_timestamp((local.get(FIELD_TIMESTAMPS_KEY) or {}).get(field))
    rt = parse_timestamp((remote.get(FIELD_TIMESTAMPS_KEY) or {}).get(field))
    if lt is not None and rt is not None and lt > rt:
        return "local"
    return "remote"


def _merge_metadata(resolved: dict, local: dict, remote: dict) -> dict:
    lts = dict(local.get(FIELD_TIMESTAMPS_KEY) or {})
    rts = dict(remote.get(FIELD_TIMESTAMPS_KEY) or {})
    if lts or rts:
        merged_ts = {}
        for key in sorted(set(lts) | set(rts)):
            a, b = lts.get(key), rts.get(key)
            if a is None or b is None:
                merged_ts[key] = a if b is None else b
            else:
                merged_ts[key] = a if (parse_timestamp(a) or 0) > (parse_timestamp(b) or 0) else b
        resolved[FIELD_TIMESTAMPS_KEY] = merged_ts

    lt, rt = record_timestamp(local), record_timestamp(remote)
    if lt is not None and (rt is None or lt > rt):
        resolved["updated_at"] = local.get("updated_at")
    elif "updated_at" in remote:
        resolved["updated_at"] = remote.get("updated_at")
    if "version" in local or "version" in remote:
        resolved["version"] = max(record_version(local), record_version(remote))
    return resolved


def merge_fields(
    local: dict,
    remote: dict,
    base: Optional[dict] = None,
    field_map: Optional[dict[str, str]] = None,
) -> dict:
    """Field-level merge of two record versions.

    Each business field comes from the side that last touched it: a known
    base snapshot decides one-sided edits, per-field timestamps decide
    overlapping ones, and the remote copy wins when neither can. Fields
    present on one side only keep that side's value. ``field_map`` pins
    individual fields to ``"local"`` or ``"remote"``.
    """
    resolved = {k: copy.deepcopy(v) for k, v in remote.items() if is_metadata_key(k)}
    for key in sorted(set(local) | set(remote)):
        if is_metadata_key(key):
            continue
        side = (field_map or {}).get(key) or _pick_field(key, local, remote, base)
        source = local if side == "local" else remote
        if key in source:
            resolved[key] = copy.deepcopy(source[key])
    return _merge_metadata(resolved, local, remote)


class ConflictResolver:
    def __init__(
        self,
        db_path: str,
        cfg: Optional[SyncConfig] = None,
        audit: Optional[AuditSink] = None,
        candidates: Optional[dict[str, CandidateResolution]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.db_path = db_path
        self.cfg = cfg or SyncConfig()
        self.audit = audit
        self.candidates = dict(DEFAULT_CANDIDATES if candidates is None else candidates)
        self.clock = clock
        self._pending: dict[str, dict[str, ConflictRecord]] = {}

        init_db(self.db_path)
        self._load_pending()

    def _db(self):
        return get_conn(self.db_path)

    def _load_pending(self):
        conn = self._db()
        rows = conn.execute("SELECT conflict_json FROM sync_conflicts ORDER BY created_at").fetchall()
        conn.close()
        for row in rows:
            conflict = ConflictRecord.model_validate_json(row["conflict_json"])
            self._pending.setdefault(conflict.user_id, {})[conflict.conflict_id] = conflict
        if rows:
            logger.info("conflicts_loaded count=%s", len(rows))

    def _persist(self, conflict: ConflictRecord):
        conn = self._db()
        conn.execute(
            """
            INSERT OR REPLACE INTO sync_conflicts(conflict_id,user_id,table_name,record_id,conflict_json)
            VALUES (?,?,?,?,?)
            """,
            (conflict.conflict_id, conflict.user_id, conflict.table_name, conflict.record_id, conflict.model_dump_json()),
        )
        conn.commit()
        conn.close()

    def _remove(self, conflict: ConflictRecord):
        self._pending.get(conflict.user_id, {}).pop(conflict.conflict_id, None)
        conn = self._db()
        conn.execute("DELETE FROM sync_conflicts WHERE conflict_id=?", (conflict.conflict_id,))
        conn.commit()
        conn.close()

    def _record_history(self, conflict: ConflictRecord, result: ConflictResolution):
        conn = self._db()
        conn.execute(
            """
            INSERT INTO conflict_resolutions(user_id,conflict_id,table_name,conflict_type,strategy,resolved_by,resolved_at)
            VALUES (?,?,?,?,?,?,?)
            """,
            (
                conflict.user_id,
                conflict.conflict_id,
                conflict.table_name,
                conflict.conflict_type,
                result.strategy,
                result.resolved_by,
                result.resolved_at,
            ),
        )
        # Keep the newest N rows per user.
        conn.execute(
            """
            DELETE FROM conflict_resolutions
             WHERE user_id=? AND id NOT IN (
               SELECT id FROM conflict_resolutions WHERE user_id=? ORDER BY id DESC LIMIT ?
             )
            """,
            (conflict.user_id, conflict.user_id, self.cfg.resolution_history_limit),
        )
        conn.commit()
        conn.close()

    def candidate_resolutions(self, table_name: str, conflicting_fields: list[str]) -> list[CandidateResolution]:
        out: list[CandidateResolution] = []
        seen = set()
        for field in conflicting_fields:
            cand = self.candidates.get(f"{table_name}.{field}")
            if cand is None:
                cand = CandidateResolution(
                    strategy=self.cfg.default_conflict_strategy,
                    confidence=0.5,
                    description=f"Default strategy for {field}",
                    risk_level="critical" if _matches(field, CRITICAL_FIELDS) else "low",
                )
            key = (cand.strategy, cand.confidence, cand.description)
            if key not in seen:
                seen.add(key)
                out.append(cand)
        out.sort(key=lambda c: -c.confidence)
        return out

    def detect_conflict(
        self,
        user_id: str,
        table_name: str,
        record_id: str,
        local_data: Optional[dict],
        remote_data: Optional[dict],
        device_id: str,
        base_data: Optional[dict] = None,
    ) -> Optional[ConflictRecord]:
        # A side that does not exist yet is a create, not a conflict.
        if not local_data or not remote_data:
            return None

        changed = diff_keys(local_data, remote_data)
        if not changed:
            return None

        business_changed = [k for k in changed if not is_metadata_key(k)]
        if not business_changed:
            conflict_type = "timestamp_conflict"
            fields = changed
        elif base_data is not None:
            local_edits = set(diff_keys(business_fields(local_data), business_fields(base_data)))
            remote_edits = set(diff_keys(business_fields(remote_data), business_fields(base_data)))
            conflict_type = "field_conflict" if local_edits & remote_edits else "version_conflict"
            fields = business_changed
        else:
            conflict_type = "field_conflict"
            fields = business_changed

        conflict = ConflictRecord(
            conflict_id=f"conflict_{table_name}_{record_id}_{uuid.uuid4().hex[:12]}",
            user_id=user_id,
            table_name=table_name,
            record_id=record_id,
            device_id=device_id,
            remote_device_id=remote_data.get("device_id"),
            local_data=copy.deepcopy(local_data),
            remote_data=copy.deepcopy(remote_data),
            base_data=copy.deepcopy(base_data) if base_data is not None else None,
            conflicting_fields=fields,
            conflict_type=conflict_type,
            severity="low" if conflict_type == "timestamp_conflict" else assess_severity(fields),
            auto_resolvable=conflict_type == "timestamp_conflict" or is_auto_resolvable(fields),
            candidates=[] if conflict_type == "timestamp_conflict" else self.candidate_resolutions(table_name, fields),
        )
        self._pending.setdefault(user_id, {})[conflict.conflict_id] = conflict
        self._persist(conflict)

        logger.info(
            "conflict_detected id=%s table=%s record=%s type=%s fields=%s",
            conflict.conflict_id, table_name, record_id, conflict_type, ",".join(fields),
        )
        emit_audit(
            self.audit,
            "CONFLICT_DETECTED",
            user_id=user_id,
            conflict_id=conflict.conflict_id,
            table=table_name,
            record_id=record_id,
            device_id=device_id,
            conflict_type=conflict_type,
            conflicting_fields=fields,
            severity=conflict.severity,
        )
        return conflict

    def _defer(self, conflict: ConflictRecord, reason: str) -> ConflictResolution:
        logger.info("conflict_deferred id=%s reason=%s", conflict.conflict_id, reason)
        emit_audit(
            self.audit,
            "CONFLICT_RESOLUTION_DEFERRED",
            user_id=conflict.user_id,
            conflict_id=conflict.conflict_id,
            table=conflict.table_name,
            reason=reason,
            severity=conflict.severity,
        )
        return ConflictResolution(
            success=False,
            conflict_id=conflict.conflict_id,
            requires_user_intervention=True,
            message=reason,
        )

    def _finish(self, conflict: ConflictRecord, resolved: dict, strategy: str, resolved_by: str) -> ConflictResolution:
        result = ConflictResolution(
            success=True,
            conflict_id=conflict.conflict_id,
            resolved_data=resolved,
            strategy=strategy,
            conflicts_resolved=1,
            resolved_by=resolved_by,
            message=f"resolved_with_{strategy}",
            resolved_at=self.clock(),
        )
        self._remove(conflict)
        self._record_history(conflict, result)
        logger.info("conflict_resolved id=%s strategy=%s by=%s", conflict.conflict_id, strategy, resolved_by)
        emit_audit(
            self.audit,
            "CONFLICT_RESOLVED",
            user_id=conflict.user_id,
            conflict_id=conflict.conflict_id,
            table=conflict.table_name,
            strategy=strategy,
            resolved_by=resolved_by,
            automatic=resolved_by == "system",
        )
        return result

    def resolve_conflict_automatically(
        self, conflict: ConflictRecord, strategy: Optional[str] = None
    ) -> ConflictResolution:
        local, remote = conflict.local_data, conflict.remote_data

        if conflict.conflict_type == "timestamp_conflict":
            return self._finish(conflict, merge_fields(local, remote), "timestamp_only", "system")
        if not conflict.auto_resolvable:
            return self._defer(conflict, "requires_manual_resolution")
        if conflict.conflict_type == "version_conflict":
            return self._finish(conflict, merge_fields(local, remote, conflict.base_data), "field_level_merge", "system")

        chosen = strategy or self.cfg.default_conflict_strategy
        if chosen in _MANUAL_STRATEGIES:
            return self._defer(conflict, f"strategy_{chosen}")
        if chosen == "field_level_merge":
            resolved = merge_fields(local, remote, conflict.base_data)
        elif chosen == "last_write_wins":
            _winner, resolved = resolve_last_write_wins(local, remote, conflict.device_id, conflict.remote_device_id)
        else:
            return ConflictResolution(
                success=False,
                conflict_id=conflict.conflict_id,
                strategy="failed",
                error=f"unsupported_strategy: {chosen}",
            )
        return self._finish(conflict, resolved, chosen, "system")

    def resolve_conflict_manually(
        self,
        conflict_id: str,
        user_id: str,
        choice: str,
        field_map: Optional[dict[str, str]] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> ConflictResolution:
        conflict = self._pending.get(user_id, {}).get(conflict_id)
        if conflict is None:
            return ConflictResolution(success=False, conflict_id=conflict_id, strategy="not_found", error="conflict_not_found")

        local, remote = conflict.local_data, conflict.remote_data
        if choice == "take_local":
            resolved = copy.deepcopy(local)
        elif choice == "take_remote":
            resolved = copy.deepcopy(remote)
        elif choice == "merge_fields":
            bad = {k: v for k, v in (field_map or {}).items() if v not in ("local", "remote")}
            if bad:
                return ConflictResolution(
                    success=False, conflict_id=conflict_id, strategy="failed", error="invalid_field_map",
                )
            resolved = merge_fields(local, remote, conflict.base_data, field_map=field_map)
        elif choice == "manual_edit":
            if not isinstance(data, dict):
                return ConflictResolution(
                    success=False, conflict_id=conflict_id, strategy="failed", error="manual_edit_requires_data",
                )
            resolved = _merge_metadata(copy.deepcopy(data), local, remote)
        else:
            return ConflictResolution(
                success=False, conflict_id=conflict_id, strategy="failed", error=f"unknown_choice: {choice}",
            )
        return self._finish(conflict, resolved, choice, "user")

    def get_conflict(self, user_id: str, conflict_id: str) -> Optional[ConflictRecord]:
        return self._pending.get(user_id, {}).get(conflict_id)

    def get_pending_conflicts(self, user_id: str) -> list[ConflictRecord]:
        items = list(self._pending.get(user_id, {}).values())
        items.sort(key=lambda c: c.created_at)
        return items

    def pending_count(self, user_id: str) -> int:
        return len(self._pending.get(user_id, {}))

    def history(self, user_id: str) -> list[dict]:
        conn = self._db()
        rows = conn.execute(
            "SELECT * FROM conflict_resolutions WHERE user_id=? ORDER BY id ASC",
            (user_id,),
        ).fetchall()
        conn.close()
        return [dict(r) for r in rows]

    def get_conflict_stats(self, user_id: str) -> dict:
        history = self.history(user_id)
        by_type: dict[str, int] = {}
        by_table: dict[str, int] = {}
        for h in history:
            by_type[h["conflict_type"]] = by_type.get(h["conflict_type"], 0) + 1
            by_table[h["table_name"]] = by_table.get(h["table_name"], 0) + 1
        return {
            "total_conflicts": len(history),
            "auto_resolved": sum(1 for h in history if h["resolved_by"] == "system"),
            "manual_resolved": sum(1 for h in history if h["resolved_by"] == "user"),
            "pending_conflicts": self.pending_count(user_id),
            "conflicts_by_type": by_type,
            "conflicts_by_table": by_table,
        }

    def cleanup(self, user_id: Optional[str] = None) -> None:
        cutoff = self.clock() - self.cfg.resolution_history_retention_sec
        conn = self._db()
        if user_id:
            self._pending.pop(user_id, None)
            conn.execute("DELETE FROM sync_conflicts WHERE user_id=?", (user_id,))
            conn.execute("DELETE FROM conflict_resolutions WHERE user_id=? AND resolved_at<?", (user_id, cutoff))
        else:
            self._pending.clear()
            conn.execute("DELETE FROM sync_conflicts")
            conn.execute("DELETE FROM conflict_resolutions")
        conn.commit()
        conn.close()
        logger.info("conflicts_cleaned user=%s", user_id or "*")


def dumps_conflict(conflict: ConflictRecord) -> str:
    return json.dumps(conflict.model_dump(mode="json"), ensure_ascii=False, indent=2)
