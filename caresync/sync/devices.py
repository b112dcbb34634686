"""Known devices per user and the trust level each one has earned.

Trust only moves forward (untrusted -> basic -> trusted -> verified) and only
on evidence: a completed login lifts an untrusted device to basic, a
successful MFA verification lifts it one more step. Revocation is absorbing:
a revoked device id is never accepted again, and the same fingerprint must
register from scratch under a new id.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Literal, Optional

from pydantic import BaseModel, Field

from caresync.core.audit import AuditSink, emit_audit
from caresync.core.errors import NetworkError, SyncError
from caresync.sync.models import DEVICES_TABLE, Device, TrustLevel, now_iso
from caresync.sync.store import RecordStore

logger = logging.getLogger("sync.devices")

# Deliberately uninformative; the reason is only recorded in the audit trail.
REJECTED_MESSAGE = "sync_unavailable"


class TrustEvidence(BaseModel):
    kind: Literal["login", "mfa_verified"]
    verified: bool = False
    verified_at: str = Field(default_factory=now_iso)


class TrustChangeResult(BaseModel):
    success: bool
    device_id: str
    previous_level: Optional[TrustLevel] = None
    trust_level: Optional[TrustLevel] = None
    message: Optional[str] = None


def fingerprint_hash(user_id: str, fingerprint: str) -> str:
    return hashlib.sha256(f"{user_id}:{fingerprint}".encode("utf-8")).hexdigest()


def derive_device_id(fp_hash: str, generation: int) -> str:
    return "dev_" + hashlib.sha256(f"{fp_hash}:{generation}".encode("utf-8")).hexdigest()[:24]


class DeviceTrustRegistry:
    def __init__(self, store: RecordStore, audit: Optional[AuditSink] = None):
        self.store = store
        self.audit = audit
        self.devices: dict[str, Device] = {}
        self._hydrated: set[str] = set()
        # Devices changed while the store was unreachable.
        self._dirty: set[str] = set()

    async def hydrate(self, user_id: str, force: bool = False) -> None:
        if user_id in self._hydrated and not force:
            return
        try:
            rows = await self.store.list(DEVICES_TABLE, user_id=user_id)
        except NetworkError as e:
            logger.warning("device_hydrate_offline user=%s error=%s", user_id, e)
            return
        for row in rows:
            device = Device.model_validate(row)
            if device.device_id in self._dirty:
                continue
            known = self.devices.get(device.device_id)
            # Revocation recorded anywhere sticks.
            if known is not None and known.revoked and not device.revoked:
                continue
            self.devices[device.device_id] = device
        self._hydrated.add(user_id)

    async def _persist(self, device: Device) -> None:
        self.devices[device.device_id] = device
        try:
            await self.store.upsert(DEVICES_TABLE, device.device_id, device.model_dump(mode="json"))
            self._dirty.discard(device.device_id)
        except NetworkError as e:
            self._dirty.add(device.device_id)
            logger.warning("device_persist_deferred device=%s error=%s", device.device_id, e)

    async def flush(self) -> int:
        flushed = 0
        for device_id in sorted(self._dirty):
            device = self.devices.get(device_id)
            if device is None:
                self._dirty.discard(device_id)
                continue
            await self._persist(device)
            if device_id not in self._dirty:
                flushed += 1
        return flushed

    async def register_device(self, user_id: str, fingerprint: str) -> Device:
        await self.hydrate(user_id)
        fp_hash = fingerprint_hash(user_id, fingerprint)

        same_fp = [d for d in self.devices.values() if d.user_id == user_id and d.fingerprint_hash == fp_hash]
        for device in same_fp:
            if not device.revoked:
                device.last_seen = now_iso()
                await self._persist(device)
                return device

        generation = max((d.generation for d in same_fp), default=-1) + 1
        device = Device(
            device_id=derive_device_id(fp_hash, generation),
            user_id=user_id,
            fingerprint_hash=fp_hash,
            generation=generation,
        )
        await self._persist(device)
        logger.info("device_registered device=%s user=%s generation=%s", device.device_id, user_id, generation)
        emit_audit(
            self.audit,
            "DEVICE_REGISTERED",
            user_id=user_id,
            device_id=device.device_id,
            generation=generation,
        )
        return device

    async def get_device(self, device_id: str) -> Optional[Device]:
        device = self.devices.get(device_id)
        if device is not None:
            return device
        try:
            row = await self.store.get(DEVICES_TABLE, device_id)
        except NetworkError:
            return None
        if row is None:
            return None
        device = Device.model_validate(row)
        self.devices[device.device_id] = device
        return device

    def is_revoked(self, device_id: str) -> bool:
        device = self.devices.get(device_id)
        return bool(device and device.revoked)

    async def rejects(self, user_id: str, device_id: str, action: str) -> bool:
        """True when ``device_id`` is revoked. The attempt is audited; callers answer with REJECTED_MESSAGE."""
        try:
            device = await self.get_device(device_id)
        except SyncError as e:
            logger.warning("device_lookup_failed device=%s error=%s", device_id, e.code)
            return False
        if device is None or not device.revoked:
            return False
        logger.warning("revoked_device_rejected device=%s action=%s", device_id, action)
        emit_audit(self.audit, "REVOKED_DEVICE_SYNC_REJECTED", user_id=user_id, device_id=device_id, action=action)
        return True

    async def get_trust_level(self, device_id: str) -> Optional[TrustLevel]:
        """Effective trust level; None for unknown or revoked devices."""
        device = await self.get_device(device_id)
        if device is None or device.revoked:
            return None
        return device.trust_level

    async def list_devices(self, user_id: str, include_revoked: bool = True) -> list[Device]:
        await self.hydrate(user_id)
        out = [d for d in self.devices.values() if d.user_id == user_id and (include_revoked or not d.revoked)]
        out.sort(key=lambda d: d.registered_at)
        return out

    async def record_login(self, device_id: str) -> TrustChangeResult:
        result = await self.elevate_trust(device_id, TrustEvidence(kind="login", verified=True))
        if result.success:
            emit_audit(self.audit, "DEVICE_LOGIN", device_id=device_id, trust_level=result.trust_level)
        return result

    async def elevate_trust(self, device_id: str, evidence: TrustEvidence) -> TrustChangeResult:
        device = await self.get_device(device_id)
        if device is None:
            return TrustChangeResult(success=False, device_id=device_id, message="device_unknown")
        if device.revoked:
            emit_audit(self.audit, "REVOKED_DEVICE_SYNC_REJECTED", device_id=device_id, user_id=device.user_id, action="elevate_trust")
            return TrustChangeResult(success=False, device_id=device_id, message="device_rejected")

        previous = device.trust_level
        if not evidence.verified:
            emit_audit(
                self.audit,
                "DEVICE_TRUST_ELEVATION_REJECTED",
                device_id=device_id,
                user_id=device.user_id,
                evidence=evidence.kind,
                trust_level=previous,
            )
            return TrustChangeResult(
                success=False, device_id=device_id, previous_level=previous, trust_level=previous,
                message="evidence_not_verified",
            )

        if evidence.kind == "login":
            target = TrustLevel.BASIC if previous == TrustLevel.UNTRUSTED else previous
        else:
            target = previous.next_level()
            device.mfa_verified_at = evidence.verified_at

        device.last_seen = now_iso()
        if target.rank > previous.rank:
            device.trust_level = target
            logger.info("device_trust_elevated device=%s from=%s to=%s", device_id, previous.value, target.value)
            emit_audit(
                self.audit,
                "DEVICE_TRUST_ELEVATED",
                device_id=device_id,
                user_id=device.user_id,
                evidence=evidence.kind,
                previous_level=previous,
                trust_level=target,
            )
        await self._persist(device)
        return TrustChangeResult(
            success=True, device_id=device_id, previous_level=previous, trust_level=device.trust_level,
        )

    async def revoke(self, device_id: str, reason: str = "user_request") -> TrustChangeResult:
        device = await self.get_device(device_id)
        if device is None:
            return TrustChangeResult(success=False, device_id=device_id, message="device_unknown")
        previous = device.trust_level
        if not device.revoked:
            device.revoked = True
            device.revoked_at = now_iso()
            await self._persist(device)
            logger.warning("device_revoked device=%s user=%s reason=%s", device_id, device.user_id, reason)
            emit_audit(
                self.audit,
                "DEVICE_REVOKED",
                device_id=device_id,
                user_id=device.user_id,
                previous_level=previous,
                reason=reason,
            )
        return TrustChangeResult(success=True, device_id=device_id, previous_level=previous, message="revoked")
