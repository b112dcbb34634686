"""Trust-gated distribution of API keys and MFA secrets.

Every field is encrypted on its own before it enters the queue, and no
field is released to a device whose trust level is below that field's
configured minimum.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from pydantic import BaseModel, Field

from caresync.core.audit import AuditSink, emit_audit
from caresync.core.config import CredentialConfig
from caresync.core.crypto import EncryptedField, EncryptionService
from caresync.core.errors import EncryptionError, NetworkError
from caresync.sync.devices import REJECTED_MESSAGE, DeviceTrustRegistry, TrustChangeResult, TrustEvidence
from caresync.sync.models import (
    CREDENTIALS_TABLE,
    PRIORITY_HIGH,
    CredentialPayload,
    SyncQueueItem,
    TrustLevel,
    record_version,
)
from caresync.sync.queue import SyncQueue

logger = logging.getLogger("sync.credentials")

API_KEY_FIELDS = ("api_key", "call_agent_id", "sms_agent_id")
MFA_FIELDS = ("mfa_secret", "backup_codes")


class MfaVerifier(Protocol):
    async def verify(self, user_id: str, code: str) -> bool:
        ...


class RejectingMfaVerifier:
    """Fails closed until a real MFA backend is configured."""

    async def verify(self, user_id: str, code: str) -> bool:
        logger.warning("mfa_verifier_not_configured user=%s", user_id)
        return False


class CredentialSyncResult(BaseModel):
    success: bool
    credentials_synced: int = 0
    conflicts: int = 0
    errors: list[str] = Field(default_factory=list)
    device_trust_level: Optional[TrustLevel] = None
    queued_item_id: Optional[str] = None
    message: Optional[str] = None


class SecureCredentialSync:
    def __init__(
        self,
        registry: DeviceTrustRegistry,
        queue: SyncQueue,
        encryption: EncryptionService,
        cfg: Optional[CredentialConfig] = None,
        verifier: Optional[MfaVerifier] = None,
        audit: Optional[AuditSink] = None,
    ):
        self.registry = registry
        self.queue = queue
        self.encryption = encryption
        self.cfg = cfg or CredentialConfig()
        self.verifier = verifier or RejectingMfaVerifier()
        self.audit = audit
        # Ciphertext released to each (user, device); plaintext is never cached.
        self._device_bundles: dict[tuple[str, str], dict[str, EncryptedField]] = {}
        self.queue.set_conflict_handler(CREDENTIALS_TABLE, self._on_conflict)

    def required_level(self, field: str) -> TrustLevel:
        return TrustLevel(self.cfg.required_trust.get(field, self.cfg.default_required_trust))

    async def _gate(
        self, user_id: str, device_id: str, fields: list[str], action: str
    ) -> tuple[Optional[TrustLevel], Optional[CredentialSyncResult]]:
        device = await self.registry.get_device(device_id)
        if device is None or device.user_id != user_id:
            emit_audit(self.audit, action, user_id=user_id, device_id=device_id, success=False, reason="device_unknown")
            return None, CredentialSyncResult(success=False, errors=["device_unknown"], message=REJECTED_MESSAGE)
        if device.revoked:
            logger.warning("revoked_device_rejected device=%s action=%s", device_id, action)
            emit_audit(self.audit, "REVOKED_DEVICE_SYNC_REJECTED", user_id=user_id, device_id=device_id, action=action)
            return None, CredentialSyncResult(success=False, message=REJECTED_MESSAGE)

        level = device.trust_level
        required = max((self.required_level(f) for f in fields), key=lambda t: t.rank, default=TrustLevel.TRUSTED)
        if not level.at_least(required):
            emit_audit(
                self.audit,
                action,
                user_id=user_id,
                device_id=device_id,
                success=False,
                trust_level=level,
                required_trust=required,
            )
            return level, CredentialSyncResult(
                success=False,
                device_trust_level=level,
                errors=[f"trust_level_insufficient: {level.value} < {required.value}"],
                message="trust_level_insufficient",
            )
        return level, None

    async def _encrypt_fields(self, values: dict[str, str]) -> tuple[dict[str, EncryptedField], list[str]]:
        encrypted: dict[str, EncryptedField] = {}
        errors: list[str] = []
        for field in sorted(values):
            value = values[field]
            if value in (None, ""):
                continue
            try:
                encrypted[field] = await self.encryption.encrypt(str(value))
            except EncryptionError as e:
                errors.append(f"encryption_failed: {field}")
                logger.error("credential_encrypt_failed field=%s error=%s", field, e.code)
            except Exception as e:
                errors.append(f"encryption_failed: {field}")
                logger.error("credential_encrypt_failed field=%s error=%s", field, type(e).__name__)
        return encrypted, errors

    async def _remote_version(self, user_id: str) -> Optional[int]:
        try:
            current = await self.queue.store.get(CREDENTIALS_TABLE, user_id)
        except NetworkError:
            return None
        return record_version(current) if current else None

    async def _enqueue(self, user_id: str, device_id: str, encrypted: dict[str, EncryptedField]) -> SyncQueueItem:
        version = await self._remote_version(user_id)
        item = self.queue.enqueue(
            {
                "user_id": user_id,
                "device_id": device_id,
                "operation_type": "update" if version else "create",
                "table_name": CREDENTIALS_TABLE,
                "record_id": user_id,
                "payload": CredentialPayload(fields=encrypted),
                "expected_version": version,
                "priority": PRIORITY_HIGH,
                "encryption_required": True,
                "sensitive_data": True,
            }
        )
        if await self.queue.store.ping():
            await self.queue.drain(user_id=user_id)
        return item

    async def _push(self, user_id: str, device_id: str, values: dict[str, str], action: str) -> CredentialSyncResult:
        level, rejected = await self._gate(user_id, device_id, list(values), action)
        if rejected is not None:
            return rejected

        encrypted, errors = await self._encrypt_fields(values)
        item_id = None
        if encrypted:
            item_id = (await self._enqueue(user_id, device_id, encrypted)).id
            self._device_bundles.setdefault((user_id, device_id), {}).update(encrypted)

        result = CredentialSyncResult(
            success=not errors and bool(encrypted),
            credentials_synced=len(encrypted),
            errors=errors if encrypted or errors else ["no_credentials"],
            device_trust_level=level,
            queued_item_id=item_id,
        )
        emit_audit(
            self.audit,
            action,
            user_id=user_id,
            device_id=device_id,
            success=result.success,
            fields=sorted(encrypted),
            errors=len(errors),
            trust_level=level,
        )
        return result

    async def sync_api_keys(self, user_id: str, device_id: str, keys: dict[str, str]) -> CredentialSyncResult:
        logger.info("api_keys_sync user=%s device=%s fields=%s", user_id, device_id, ",".join(sorted(keys)))
        return await self._push(user_id, device_id, dict(keys), "API_KEYS_SYNC_ATTEMPT")

    async def sync_mfa_secrets(
        self, user_id: str, device_id: str, secrets: Optional[dict[str, str]] = None
    ) -> CredentialSyncResult:
        """Push new MFA material, or with no ``secrets`` pull the stored bundle to this device."""
        if secrets:
            return await self._push(user_id, device_id, dict(secrets), "MFA_SECRETS_SYNC_ATTEMPT")

        level, rejected = await self._gate(user_id, device_id, list(MFA_FIELDS), "MFA_SECRETS_SYNC_ATTEMPT")
        if rejected is not None:
            return rejected

        errors: list[str] = []
        delivered: dict[str, EncryptedField] = {}
        try:
            record = await self.queue.store.get(CREDENTIALS_TABLE, user_id) or {}
        except NetworkError as e:
            record = {}
            errors.append(f"store_unreachable: {e.code}")

        for field in MFA_FIELDS:
            raw = record.get(field)
            if not raw:
                continue
            try:
                bundle = EncryptedField.model_validate(raw)
                # Fail closed on tampered ciphertext before releasing it.
                await self.encryption.decrypt(bundle)
            except Exception as e:
                errors.append(f"decrypt_failed: {field}")
                logger.error("mfa_bundle_invalid field=%s error=%s", field, type(e).__name__)
                continue
            delivered[field] = bundle

        if delivered:
            self._device_bundles.setdefault((user_id, device_id), {}).update(delivered)
        emit_audit(
            self.audit,
            "MFA_SECRETS_SYNC_ATTEMPT",
            user_id=user_id,
            device_id=device_id,
            success=not errors,
            fields=sorted(delivered),
            trust_level=level,
        )
        return CredentialSyncResult(
            success=not errors,
            credentials_synced=len(delivered),
            errors=errors,
            device_trust_level=level,
        )

    async def reveal(self, user_id: str, device_id: str, field: str) -> Optional[str]:
        """Decrypt one released field for a device that still qualifies for it."""
        _level, rejected = await self._gate(user_id, device_id, [field], "CREDENTIAL_REVEAL")
        if rejected is not None:
            return None
        bundle = self._device_bundles.get((user_id, device_id), {}).get(field)
        if bundle is None:
            return None
        return await self.encryption.decrypt(bundle)

    def forget_device(self, user_id: str, device_id: Optional[str] = None) -> None:
        for key in list(self._device_bundles):
            if key[0] == user_id and (device_id is None or key[1] == device_id):
                del self._device_bundles[key]

    async def verify_device_for_sync(self, user_id: str, device_id: str, mfa_code: str) -> TrustChangeResult:
        device = await self.registry.get_device(device_id)
        if device is None or device.user_id != user_id or device.revoked:
            if device is not None and device.revoked:
                emit_audit(self.audit, "REVOKED_DEVICE_SYNC_REJECTED", user_id=user_id, device_id=device_id, action="verify")
            emit_audit(self.audit, "DEVICE_VERIFICATION_FAILED", user_id=user_id, device_id=device_id, reason="device_rejected")
            return TrustChangeResult(success=False, device_id=device_id, message=REJECTED_MESSAGE)

        try:
            verified = bool(await self.verifier.verify(user_id, mfa_code))
        except Exception as e:
            logger.error("mfa_verifier_failed user=%s error=%s", user_id, type(e).__name__)
            verified = False

        if not verified:
            emit_audit(
                self.audit,
                "DEVICE_VERIFICATION_FAILED",
                user_id=user_id,
                device_id=device_id,
                reason="mfa_verification_failed",
                trust_level=device.trust_level,
            )
            return TrustChangeResult(
                success=False,
                device_id=device_id,
                previous_level=device.trust_level,
                trust_level=device.trust_level,
                message="mfa_verification_failed",
            )

        result = await self.registry.elevate_trust(device_id, TrustEvidence(kind="mfa_verified", verified=True))
        emit_audit(
            self.audit,
            "DEVICE_VERIFIED_FOR_SYNC",
            user_id=user_id,
            device_id=device_id,
            previous_level=result.previous_level,
            trust_level=result.trust_level,
        )
        return result

    async def _on_conflict(self, item: SyncQueueItem, remote: Optional[dict]) -> Optional[str]:
        # The credential just written locally is the newest; replay it on top of the remote version.
        self.queue.settle_conflict(item.id, status="cancelled", message="rebased_on_remote")
        self.queue.enqueue(
            item.model_copy(
                update={
                    "id": "",
                    "seq": 0,
                    "created_at": 0.0,
                    "scheduled_for": 0.0,
                    "retry_count": 0,
                    "expected_version": record_version(remote) if remote else None,
                    "operation_type": "update" if remote else "create",
                }
            )
        )
        logger.info("credential_conflict_rebased item=%s", item.id)
        return None
