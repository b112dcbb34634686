import asyncio
import json
from pathlib import Path

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from caresync.core.audit import MemoryAuditSink
from caresync.core.config import AppConfig
from caresync.core.crypto import AesGcmEncryptionService
from caresync.runtime import build_runtime
from caresync.sync.credentials import REJECTED_MESSAGE
from caresync.sync.models import CREDENTIALS_TABLE, PROFILES_TABLE, SETTINGS_TABLE, SyncContext, TrustLevel
from caresync.sync.store import ChangeFeed, MemoryRecordStore


def _runtime(tmp_path: Path, name: str = "a", store=None, feed=None, audit=None):
    cfg = AppConfig()
    cfg.database.path = str(tmp_path / f"{name}.db")
    cfg.logging.audit_file = ""
    return build_runtime(
        cfg,
        store=store,
        feed=feed,
        audit=audit or MemoryAuditSink(),
        encryption=AesGcmEncryptionService(AESGCM.generate_key(bit_length=256)),
    )


def test_initialize_sync_registers_device_and_runs_login_sync(tmp_path: Path):
    audit = MemoryAuditSink()
    rt = _runtime(tmp_path, audit=audit)
    triggers = []
    rt.manager.subscribe_to_sync_events("u1", lambda event: triggers.append(event.trigger))

    async def _run():
        init = await rt.manager.initialize_sync("u1", "laptop", enable_periodic_sync=False)
        status = await rt.manager.get_status("u1")
        await rt.manager.shutdown()
        return init, status

    init, status = asyncio.run(_run())

    assert init.success is True
    assert init.device.trust_level == TrustLevel.BASIC
    assert init.login.success is True
    assert [r["type"] for r in init.login.results] == ["settings", "profile"]
    assert triggers == ["login"]
    assert status.is_online is True
    assert status.cloud_connected is True
    assert status.device_count == 1
    assert status.sync_health == "healthy"
    assert "SYNC_SESSION_STARTED" in audit.names()
    assert "SYNC_COMPLETED" in audit.names()


def test_trigger_reason_limits_synchronizers(tmp_path: Path):
    rt = _runtime(tmp_path)

    async def _run():
        init = await rt.manager.initialize_sync("u1", "laptop", enable_periodic_sync=False)
        settings_only = await rt.manager.trigger_sync("settings_change", "u1")
        profile_only = await rt.manager.trigger_sync("profile_update", "u1")
        manual = await rt.manager.trigger_sync("manual", "u1", init.device.device_id)
        await rt.manager.shutdown()
        return settings_only, profile_only, manual

    settings_only, profile_only, manual = asyncio.run(_run())

    assert [r["type"] for r in settings_only.results] == ["settings"]
    assert [r["type"] for r in profile_only.results] == ["profile"]
    assert [r["type"] for r in manual.results] == ["settings", "profile"]


def test_trusted_device_pulls_mfa_on_login(tmp_path: Path):
    rt = _runtime(tmp_path)

    async def _run():
        init = await rt.manager.initialize_sync("u1", "laptop", enable_periodic_sync=False)
        device_id = init.device.device_id
        await rt.registry.elevate_trust(device_id, _mfa())
        await rt.credentials.sync_mfa_secrets("u1", device_id, {"mfa_secret": "JBSWY3DP"})
        result = await rt.manager.trigger_sync("mfa_change", "u1")
        await rt.manager.shutdown()
        return result

    result = asyncio.run(_run())

    mfa = [r for r in result.results if r["type"] == "mfa"]
    assert len(mfa) == 1
    assert mfa[0]["success"] is True
    assert mfa[0]["credentials_synced"] == 1


def _mfa():
    from caresync.sync.devices import TrustEvidence

    return TrustEvidence(kind="mfa_verified", verified=True)


def test_trigger_without_session_or_for_revoked_device(tmp_path: Path):
    audit = MemoryAuditSink()
    rt = _runtime(tmp_path, audit=audit)

    async def _run():
        no_session = await rt.manager.trigger_sync("manual", "u1")
        init = await rt.manager.initialize_sync("u1", "laptop", enable_periodic_sync=False)
        await rt.registry.revoke(init.device.device_id)
        revoked = await rt.manager.trigger_sync("manual", "u1")
        await rt.manager.shutdown()
        return no_session, revoked

    no_session, revoked = asyncio.run(_run())

    assert no_session.success is False
    assert no_session.message == "no_active_session"
    assert revoked.success is False
    assert revoked.message == REJECTED_MESSAGE
    assert "REVOKED_DEVICE_SYNC_REJECTED" in audit.names()


def test_revoked_device_cannot_write_records(tmp_path: Path):
    store = MemoryRecordStore()
    audit = MemoryAuditSink()
    rt = _runtime(tmp_path, store=store, audit=audit)

    async def _run():
        init = await rt.manager.initialize_sync("u1", "laptop", enable_periodic_sync=False)
        device_id = init.device.device_id
        await rt.settings.update_settings("u1", {"theme": "dark"}, device_id)
        store.online = False
        await rt.settings.update_settings("u1", {"theme": "solarized"}, device_id)
        store.online = True
        revoked = await rt.manager.revoke_device(device_id, reason="lost")
        update = await rt.settings.update_settings("u1", {"theme": "hacked"}, device_id)
        profile = await rt.profiles.update_profile("u1", {"name": "Mallory"}, device_id)
        reconcile = await rt.settings.reconcile(SyncContext("u1", device_id))
        await rt.queue.drain()
        await rt.manager.shutdown()
        return revoked, update, profile, reconcile

    revoked, update, profile, reconcile = asyncio.run(_run())

    assert revoked.success is True
    for result in (update, profile, reconcile):
        assert not result.ok
        assert str(result.error) == REJECTED_MESSAGE
        assert result.error.code == "trust_insufficient"
    assert store.tables[SETTINGS_TABLE]["u1"]["theme"] == "dark"
    assert "name" not in store.tables.get(PROFILES_TABLE, {}).get("u1", {})
    assert rt.queue.pending_count("u1") == 0
    assert any(i.error_message == "device_revoked" for i in rt.queue.list_items(user_id="u1", status="cancelled"))
    rejected = [details for name, details in audit.events if name == "REVOKED_DEVICE_SYNC_REJECTED"]
    assert {d["action"] for d in rejected} >= {"update:user_settings", "update:user_profiles", "reconcile:user_settings"}


def test_logout_flushes_encrypted_credentials_with_the_rest(tmp_path: Path):
    store = MemoryRecordStore()
    audit = MemoryAuditSink()
    rt = _runtime(tmp_path, store=store, audit=audit)

    async def _run():
        init = await rt.manager.initialize_sync("u1", "laptop", enable_periodic_sync=False)
        device_id = init.device.device_id
        store.online = False
        await rt.credentials.sync_api_keys("u1", device_id, {"api_key": "sk-123"})
        await rt.settings.update_settings("u1", {"theme": "dark"}, device_id)
        store.online = True
        out = await rt.manager.handle_logout("u1")
        after = await rt.manager.trigger_sync("manual", "u1")
        return out, after

    out, after = asyncio.run(_run())

    assert out == {"flushed": 2, "remaining": 0, "sensitive_pending": 0}
    assert store.tables[SETTINGS_TABLE]["u1"]["theme"] == "dark"
    stored = store.tables[CREDENTIALS_TABLE]["u1"]
    assert set(stored["api_key"]) >= {"data", "iv", "tag"}
    assert "sk-123" not in json.dumps(stored)
    assert after.message == "no_active_session"
    assert "SYNC_SESSION_ENDED" in audit.names()


def test_offline_logout_keeps_encrypted_credentials_for_next_session(tmp_path: Path):
    store = MemoryRecordStore()
    rt = _runtime(tmp_path, store=store)

    async def _run():
        init = await rt.manager.initialize_sync("u1", "laptop", enable_periodic_sync=False)
        store.online = False
        await rt.credentials.sync_api_keys("u1", init.device.device_id, {"api_key": "sk-123"})
        out = await rt.manager.handle_logout("u1")
        queued = [i for i in rt.queue.list_items(user_id="u1", status="pending") if i.sensitive_data]
        store.online = True
        await rt.manager.initialize_sync("u1", "laptop", enable_periodic_sync=False)
        await rt.manager.shutdown()
        return out, queued

    out, queued = asyncio.run(_run())

    assert out == {"flushed": 0, "remaining": 1, "sensitive_pending": 1}
    assert len(queued) == 1
    assert queued[0].encryption_required is True
    assert "sk-123" not in queued[0].payload.model_dump_json()
    assert "api_key" in store.tables[CREDENTIALS_TABLE]["u1"]
    assert rt.queue.pending_count("u1") == 0


def test_change_feed_pulls_edit_from_other_device(tmp_path: Path):
    feed = ChangeFeed()
    store = MemoryRecordStore(feed=feed)
    a = _runtime(tmp_path, "a", store=store, feed=feed)
    b = _runtime(tmp_path, "b", store=store, feed=feed)

    async def _run():
        init_a = await a.manager.initialize_sync("u1", "laptop", enable_periodic_sync=False)
        await b.manager.initialize_sync("u1", "phone", enable_periodic_sync=False)
        await a.profiles.update_profile("u1", {"name": "Ann"}, init_a.device.device_id)
        await store.settle()
        await a.manager.shutdown()
        await b.manager.shutdown()

    asyncio.run(_run())

    assert store.tables[PROFILES_TABLE]["u1"]["name"] == "Ann"
    assert b.profiles.get_local("u1")["name"] == "Ann"
    assert b.profiles.get_local("u1")["version"] == 1


def test_change_from_own_device_is_ignored(tmp_path: Path):
    rt = _runtime(tmp_path)

    async def _run():
        from caresync.sync.store import ChangeNotification

        init = await rt.manager.initialize_sync("u1", "laptop", enable_periodic_sync=False)
        own = ChangeNotification(table=SETTINGS_TABLE, record_id="u1", user_id="u1", device_id=init.device.device_id)
        other = ChangeNotification(table=SETTINGS_TABLE, record_id="u1", user_id="u1", device_id="dev-other")
        unknown_user = ChangeNotification(table=SETTINGS_TABLE, record_id="u2", user_id="u2", device_id="dev-other")
        out = (
            await rt.manager.handle_change(own),
            await rt.manager.handle_change(other),
            await rt.manager.handle_change(unknown_user),
        )
        await rt.manager.shutdown()
        return out

    own, other, unknown_user = asyncio.run(_run())

    assert own is None
    assert other["type"] == "settings"
    assert unknown_user is None


def test_sync_health_reflects_pending_conflicts_and_connectivity(tmp_path: Path):
    store = MemoryRecordStore()
    rt = _runtime(tmp_path, store=store)

    def _conflicts(n: int):
        for i in range(n):
            rt.resolver.detect_conflict("u1", PROFILES_TABLE, f"r{i}", {"role": "a"}, {"role": "b"}, "dev-a")

    async def _status():
        return (await rt.manager.get_status("u1")).sync_health

    assert asyncio.run(_status()) == "healthy"
    _conflicts(1)
    assert asyncio.run(_status()) == "warning"
    _conflicts(5)
    assert asyncio.run(_status()) == "error"
    store.online = False
    assert asyncio.run(_status()) == "offline"


def test_periodic_sync_runs_until_logout(tmp_path: Path):
    rt = _runtime(tmp_path)
    triggers = []
    rt.manager.subscribe_to_sync_events("u1", lambda event: triggers.append(event.trigger))

    async def _run():
        await rt.manager.initialize_sync("u1", "laptop", enable_periodic_sync=True, periodic_interval_sec=1)
        await asyncio.sleep(1.5)
        await rt.manager.handle_logout("u1")
        return dict(rt.manager._periodic)

    periodic = asyncio.run(_run())

    assert "periodic" in triggers
    assert periodic == {}
