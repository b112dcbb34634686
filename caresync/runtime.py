from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from caresync.core.audit import AuditSink, JsonlAuditSink, LoggingAuditSink
from caresync.core.config import AppConfig
from caresync.core.crypto import AesGcmEncryptionService, EncryptionService
from caresync.sync.conflicts import ConflictResolver
from caresync.sync.credentials import MfaVerifier, SecureCredentialSync
from caresync.sync.db import init_db
from caresync.sync.devices import DeviceTrustRegistry
from caresync.sync.manager import SyncManager
from caresync.sync.queue import SyncQueue
from caresync.sync.records import ProfileSyncService, SettingsSyncService
from caresync.sync.store import ChangeFeed, MemoryRecordStore, RecordStore, RestRecordStore

logger = logging.getLogger("runtime")


@dataclass
class Runtime:
    cfg: AppConfig
    store: RecordStore
    feed: Optional[ChangeFeed]
    audit: AuditSink
    queue: SyncQueue
    resolver: ConflictResolver
    registry: DeviceTrustRegistry
    credentials: SecureCredentialSync
    settings: SettingsSyncService
    profiles: ProfileSyncService
    manager: SyncManager


def build_store(cfg: AppConfig, feed: Optional[ChangeFeed] = None) -> RecordStore:
    if cfg.store.backend == "rest":
        return RestRecordStore(cfg.store.base_url, cfg.store.api_key, timeout=cfg.store.timeout_sec)
    return MemoryRecordStore(feed=feed)


def build_audit(cfg: AppConfig) -> AuditSink:
    if cfg.logging.audit_file:
        return JsonlAuditSink(cfg.logging.audit_file)
    return LoggingAuditSink()


def build_runtime(
    cfg: AppConfig,
    store: Optional[RecordStore] = None,
    feed: Optional[ChangeFeed] = None,
    audit: Optional[AuditSink] = None,
    encryption: Optional[EncryptionService] = None,
    verifier: Optional[MfaVerifier] = None,
) -> Runtime:
    db_path = cfg.database.path
    init_db(db_path)

    if feed is None and store is None and cfg.store.backend == "memory":
        feed = ChangeFeed()
    store = store or build_store(cfg, feed)
    audit = audit or build_audit(cfg)
    encryption = encryption or AesGcmEncryptionService.from_key_file(cfg.credentials.encryption_key_file)

    queue = SyncQueue(db_path, store, cfg.sync)
    resolver = ConflictResolver(db_path, cfg.sync, audit=audit)
    registry = DeviceTrustRegistry(store, audit=audit)
    credentials = SecureCredentialSync(registry, queue, encryption, cfg.credentials, verifier=verifier, audit=audit)
    settings = SettingsSyncService(db_path, queue, resolver, registry, cfg.sync, audit=audit)
    profiles = ProfileSyncService(db_path, queue, resolver, registry, cfg.sync, audit=audit)
    manager = SyncManager(
        store,
        queue,
        resolver,
        registry,
        credentials,
        settings,
        profiles,
        cfg=cfg.sync,
        feed=feed,
        audit=audit,
    )
    logger.info("runtime_built store=%s db=%s resumed=%s", cfg.store.backend, db_path, queue.resumed)
    return Runtime(
        cfg=cfg,
        store=store,
        feed=feed,
        audit=audit,
        queue=queue,
        resolver=resolver,
        registry=registry,
        credentials=credentials,
        settings=settings,
        profiles=profiles,
        manager=manager,
    )
