from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field

from caresync.core.crypto import EncryptedField

SETTINGS_TABLE = "user_settings"
PROFILES_TABLE = "user_profiles"
CREDENTIALS_TABLE = "user_credentials"
DEVICES_TABLE = "user_devices"
SESSIONS_TABLE = "device_sessions"
EVENTS_TABLE = "cross_device_sync_events"

# Keys that describe a record rather than its business content.
METADATA_KEYS = frozenset({"updated_at", "last_synced", "version", "device_id", "created_at"})
FIELD_TIMESTAMPS_KEY = "_field_timestamps"

OperationType = Literal["create", "update", "delete", "bulk_update"]
ConflictStrategy = Literal["last_write_wins", "manual_merge", "user_prompt", "field_level_merge"]
QueueStatus = Literal["pending", "processing", "completed", "failed", "conflict", "cancelled"]
SecurityLevel = Literal["low", "standard", "high", "critical"]
TriggerReason = Literal[
    "login", "logout", "settings_change", "profile_update", "mfa_change", "manual", "periodic"
]

PRIORITY_LOW = 1
PRIORITY_NORMAL = 5
PRIORITY_HIGH = 8
PRIORITY_CRITICAL = 10

TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})


class TrustLevel(str, Enum):
    UNTRUSTED = "untrusted"
    BASIC = "basic"
    TRUSTED = "trusted"
    VERIFIED = "verified"

    @property
    def rank(self) -> int:
        return _TRUST_ORDER.index(self)

    def at_least(self, required: "TrustLevel | str") -> bool:
        return self.rank >= TrustLevel(required).rank

    def next_level(self) -> "TrustLevel":
        idx = min(self.rank + 1, len(_TRUST_ORDER) - 1)
        return _TRUST_ORDER[idx]


_TRUST_ORDER = [TrustLevel.UNTRUSTED, TrustLevel.BASIC, TrustLevel.TRUSTED, TrustLevel.VERIFIED]


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: Any) -> Optional[float]:
    """Epoch seconds from ISO strings, epoch seconds or epoch milliseconds."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        num = float(value)
        return num / 1000.0 if num > 1e11 else num
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    raw = str(value).strip()
    if not raw:
        return None
    try:
        return parse_timestamp(float(raw))
    except ValueError:
        pass
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def is_metadata_key(key: str) -> bool:
    return key.startswith("_") or key in METADATA_KEYS


def business_fields(record: Optional[dict]) -> dict[str, Any]:
    return {k: v for k, v in (record or {}).items() if not is_metadata_key(k)}


def record_timestamp(record: Optional[dict]) -> Optional[float]:
    if not record:
        return None
    for key in ("updated_at", "last_synced", "timestamp"):
        ts = parse_timestamp(record.get(key))
        if ts is not None:
            return ts
    return None


def record_version(record: Optional[dict]) -> int:
    try:
        return int((record or {}).get("version") or 0)
    except (TypeError, ValueError):
        return 0


def canonical_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, separators=(",", ":"), default=str)


class Device(BaseModel):
    device_id: str
    user_id: str
    fingerprint_hash: str
    trust_level: TrustLevel = TrustLevel.UNTRUSTED
    revoked: bool = False
    # Bumped when a revoked fingerprint registers again so the new device gets a new id.
    generation: int = 0
    registered_at: str = Field(default_factory=now_iso)
    last_seen: str = Field(default_factory=now_iso)
    mfa_verified_at: Optional[str] = None
    revoked_at: Optional[str] = None


class SyncSession(BaseModel):
    user_id: str
    device_id: str
    session_token: str
    security_level: SecurityLevel = "standard"
    mfa_verified: bool = False
    started_at: str = Field(default_factory=now_iso)
    last_activity: str = Field(default_factory=now_iso)


@dataclass
class SyncContext:
    """Identity of the caller threaded through every sync call."""

    user_id: str
    device_id: str
    session: Optional[SyncSession] = None


class SettingsPayload(BaseModel):
    kind: Literal["settings"] = "settings"
    fields: dict[str, Any] = Field(default_factory=dict)


class ProfilePayload(BaseModel):
    kind: Literal["profile"] = "profile"
    fields: dict[str, Any] = Field(default_factory=dict)


class CredentialPayload(BaseModel):
    kind: Literal["credential"] = "credential"
    fields: dict[str, EncryptedField] = Field(default_factory=dict)


SyncPayload = Annotated[
    Union[SettingsPayload, ProfilePayload, CredentialPayload],
    Field(discriminator="kind"),
]

PAYLOAD_TABLES = {
    "settings": SETTINGS_TABLE,
    "profile": PROFILES_TABLE,
    "credential": CREDENTIALS_TABLE,
}


class SyncQueueItem(BaseModel):
    id: str
    seq: int = 0
    user_id: str
    device_id: str
    operation_type: OperationType
    table_name: str
    record_id: Optional[str] = None
    payload: SyncPayload
    # Version of the remote record this mutation was computed against.
    expected_version: Optional[int] = None
    conflict_strategy: ConflictStrategy = "last_write_wins"
    priority: int = PRIORITY_NORMAL
    status: QueueStatus = "pending"
    retry_count: int = 0
    # 0 takes the queue's configured limit at enqueue time.
    max_retries: int = 0
    created_at: float = 0.0
    scheduled_for: float = 0.0
    processed_at: Optional[float] = None
    error_message: Optional[str] = None
    conflict_id: Optional[str] = None
    checksum: str = ""
    encryption_required: bool = False
    sensitive_data: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


ConflictType = Literal["field_conflict", "timestamp_conflict", "version_conflict"]
Severity = Literal["low", "medium", "high", "critical"]


class CandidateResolution(BaseModel):
    strategy: str
    confidence: float
    description: str = ""
    risk_level: Literal["low", "medium", "high", "critical"] = "low"


class ConflictRecord(BaseModel):
    conflict_id: str
    user_id: str
    table_name: str
    record_id: str
    device_id: str
    remote_device_id: Optional[str] = None
    local_data: dict[str, Any]
    remote_data: dict[str, Any]
    base_data: Optional[dict[str, Any]] = None
    conflicting_fields: list[str] = Field(default_factory=list)
    conflict_type: ConflictType = "field_conflict"
    severity: Severity = "low"
    auto_resolvable: bool = True
    candidates: list[CandidateResolution] = Field(default_factory=list)
    created_at: str = Field(default_factory=now_iso)


class ConflictResolution(BaseModel):
    success: bool
    conflict_id: Optional[str] = None
    resolved_data: Optional[dict[str, Any]] = None
    strategy: str = "none"
    conflicts_resolved: int = 0
    resolved_by: Literal["system", "user", "none"] = "none"
    message: Optional[str] = None
    error: Optional[str] = None
    requires_user_intervention: bool = False
    resolved_at: Optional[float] = None
