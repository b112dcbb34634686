import asyncio
from pathlib import Path

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from caresync.core.audit import MemoryAuditSink
from caresync.core.config import SyncConfig
from caresync.core.crypto import AesGcmEncryptionService, EncryptedField
from caresync.core.errors import EncryptionError
from caresync.sync.credentials import REJECTED_MESSAGE, SecureCredentialSync
from caresync.sync.devices import DeviceTrustRegistry, TrustEvidence
from caresync.sync.models import CREDENTIALS_TABLE, TrustLevel
from caresync.sync.queue import SyncQueue
from caresync.sync.store import MemoryRecordStore


class _FailingEncryption:
    async def encrypt(self, plaintext: str) -> EncryptedField:
        raise EncryptionError("hsm_unavailable")

    async def decrypt(self, bundle: EncryptedField) -> str:
        raise EncryptionError("hsm_unavailable")


class _FixedCodeVerifier:
    def __init__(self, code: str):
        self.code = code

    async def verify(self, user_id: str, code: str) -> bool:
        return code == self.code


def _build(tmp_path: Path, encryption=None, verifier=None):
    store = MemoryRecordStore()
    audit = MemoryAuditSink()
    registry = DeviceTrustRegistry(store, audit=audit)
    queue = SyncQueue(str(tmp_path / "sync.db"), store, SyncConfig())
    creds = SecureCredentialSync(
        registry,
        queue,
        encryption or AesGcmEncryptionService(AESGCM.generate_key(bit_length=256)),
        verifier=verifier,
        audit=audit,
    )
    return store, audit, registry, queue, creds


async def _device(registry: DeviceTrustRegistry, level: TrustLevel, user_id: str = "u1", fp: str = "fp"):
    device = await registry.register_device(user_id, fp)
    if level == TrustLevel.UNTRUSTED:
        return device
    await registry.record_login(device.device_id)
    while device.trust_level.rank < level.rank:
        await registry.elevate_trust(device.device_id, TrustEvidence(kind="mfa_verified", verified=True))
    return device


def test_api_keys_are_encrypted_and_stored(tmp_path: Path):
    store, audit, registry, queue, creds = _build(tmp_path)

    async def _run():
        device = await _device(registry, TrustLevel.BASIC)
        result = await creds.sync_api_keys("u1", device.device_id, {"api_key": "sk-live-123", "sms_agent_id": "agent-7"})
        revealed = await creds.reveal("u1", device.device_id, "api_key")
        return result, revealed

    result, revealed = asyncio.run(_run())

    assert result.success is True
    assert result.credentials_synced == 2
    row = store.tables[CREDENTIALS_TABLE]["u1"]
    assert set(row["api_key"]) == {"data", "iv", "tag"}
    assert "sk-live-123" not in str(row)
    assert revealed == "sk-live-123"
    assert queue.get(result.queued_item_id).status == "completed"
    assert "API_KEYS_SYNC_ATTEMPT" in audit.names()


def test_untrusted_device_cannot_sync_keys(tmp_path: Path):
    store, audit, registry, queue, creds = _build(tmp_path)

    async def _run():
        device = await _device(registry, TrustLevel.UNTRUSTED)
        return await creds.sync_api_keys("u1", device.device_id, {"api_key": "sk"})

    result = asyncio.run(_run())

    assert result.success is False
    assert result.message == "trust_level_insufficient"
    assert queue.stats()["total"] == 0
    assert CREDENTIALS_TABLE not in store.tables


def test_mfa_requires_trusted_device(tmp_path: Path):
    _store, _audit, registry, _queue, creds = _build(tmp_path)

    async def _run():
        basic = await _device(registry, TrustLevel.BASIC, fp="basic")
        trusted = await _device(registry, TrustLevel.TRUSTED, fp="trusted")
        denied = await creds.sync_mfa_secrets("u1", basic.device_id, {"mfa_secret": "JBSWY3DP"})
        allowed = await creds.sync_mfa_secrets("u1", trusted.device_id, {"mfa_secret": "JBSWY3DP"})
        return denied, allowed

    denied, allowed = asyncio.run(_run())

    assert denied.success is False
    assert denied.device_trust_level == TrustLevel.BASIC
    assert allowed.success is True


def test_trusted_device_pulls_mfa_bundle(tmp_path: Path):
    _store, _audit, registry, _queue, creds = _build(tmp_path)

    async def _run():
        writer = await _device(registry, TrustLevel.TRUSTED, fp="writer")
        reader = await _device(registry, TrustLevel.TRUSTED, fp="reader")
        await creds.sync_mfa_secrets("u1", writer.device_id, {"mfa_secret": "JBSWY3DP", "backup_codes": "1111,2222"})
        pulled = await creds.sync_mfa_secrets("u1", reader.device_id)
        secret = await creds.reveal("u1", reader.device_id, "mfa_secret")
        return pulled, secret

    pulled, secret = asyncio.run(_run())

    assert pulled.success is True
    assert pulled.credentials_synced == 2
    assert secret == "JBSWY3DP"


def test_revoked_device_gets_generic_rejection(tmp_path: Path):
    _store, audit, registry, queue, creds = _build(tmp_path)

    async def _run():
        device = await _device(registry, TrustLevel.TRUSTED)
        await registry.revoke(device.device_id)
        return await creds.sync_api_keys("u1", device.device_id, {"api_key": "sk"})

    result = asyncio.run(_run())

    assert result.success is False
    assert result.message == REJECTED_MESSAGE
    assert result.errors == []
    assert "REVOKED_DEVICE_SYNC_REJECTED" in audit.names()
    assert queue.stats()["total"] == 0


def test_encryption_failure_queues_nothing(tmp_path: Path):
    store, _audit, registry, queue, creds = _build(tmp_path, encryption=_FailingEncryption())

    async def _run():
        device = await _device(registry, TrustLevel.BASIC)
        return await creds.sync_api_keys("u1", device.device_id, {"api_key": "sk"})

    result = asyncio.run(_run())

    assert result.success is False
    assert result.errors == ["encryption_failed: api_key"]
    assert queue.stats()["total"] == 0
    assert CREDENTIALS_TABLE not in store.tables


def test_verify_device_for_sync_elevates_on_valid_code(tmp_path: Path):
    _store, audit, registry, _queue, creds = _build(tmp_path, verifier=_FixedCodeVerifier("123456"))

    async def _run():
        device = await _device(registry, TrustLevel.BASIC)
        bad = await creds.verify_device_for_sync("u1", device.device_id, "000000")
        good = await creds.verify_device_for_sync("u1", device.device_id, "123456")
        return bad, good

    bad, good = asyncio.run(_run())

    assert bad.success is False
    assert bad.trust_level == TrustLevel.BASIC
    assert good.success is True
    assert good.trust_level == TrustLevel.TRUSTED
    assert "DEVICE_VERIFICATION_FAILED" in audit.names()
    assert "DEVICE_VERIFIED_FOR_SYNC" in audit.names()


def test_default_verifier_fails_closed(tmp_path: Path):
    _store, _audit, registry, _queue, creds = _build(tmp_path)

    async def _run():
        device = await _device(registry, TrustLevel.BASIC)
        return await creds.verify_device_for_sync("u1", device.device_id, "123456")

    assert asyncio.run(_run()).message == "mfa_verification_failed"


def test_concurrent_credential_writes_rebase(tmp_path: Path):
    store, _audit, registry, queue, creds = _build(tmp_path)

    async def _run():
        device = await _device(registry, TrustLevel.BASIC)
        store.online = False
        await creds.sync_api_keys("u1", device.device_id, {"api_key": "sk-offline"})
        store.online = True
        await store.write(CREDENTIALS_TABLE, "u1", {"user_id": "u1", "call_agent_id": "other"}, expected_version=None, operation="create")
        await queue.drain()
        return await creds.reveal("u1", device.device_id, "api_key")

    revealed = asyncio.run(_run())

    row = store.tables[CREDENTIALS_TABLE]["u1"]
    assert row["version"] == 2
    assert row["call_agent_id"] == "other"
    assert "api_key" in row
    assert revealed == "sk-offline"
    assert queue.stats()["cancelled"] == 1
    assert queue.stats()["completed"] == 1
