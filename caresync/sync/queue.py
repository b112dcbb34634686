"""Durable outbound mutation queue.

Rows live in the local SQLite ``sync_queue`` table, which is the only record
of what still has to reach the backing store. Items are drained by priority,
then by insertion order, and an item is only eligible once every earlier
unfinished item for the same record from the same device has settled.
"""

from __future__ import annotations

import asyncio
import hashlib
import inspect
import json
import logging
import random
import time
import uuid
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from caresync.core.config import SyncConfig
from caresync.core.errors import (
    AuthorizationError,
    EncryptionError,
    QueueExhaustedError,
    StorageUnavailableError,
    SyncError,
    ValidationError,
    VersionConflictError,
)
from caresync.sync.db import get_conn, init_db
from caresync.sync.models import (
    PAYLOAD_TABLES,
    PRIORITY_LOW,
    CredentialPayload,
    SyncQueueItem,
    canonical_json,
    is_metadata_key,
)
from caresync.sync.store import RecordStore

logger = logging.getLogger("sync.queue")

QueueEvent = str
QueueListener = Callable[[QueueEvent, SyncQueueItem, dict], Union[None, Awaitable[None]]]
# Receives the parked item and the current remote record; returns a conflict id when one was recorded.
ConflictHandler = Callable[[SyncQueueItem, Optional[dict]], Awaitable[Optional[str]]]

def compute_checksum(item: SyncQueueItem) -> str:
    fields = item.payload.model_dump(mode="json")["fields"]
    body = {
        "user_id": item.user_id,
        "device_id": item.device_id,
        "operation_type": item.operation_type,
        "table_name": item.table_name,
        "record_id": item.record_id,
        "kind": item.payload.kind,
        # Timestamps differ on every edit; only business content identifies a duplicate.
        "fields": {k: v for k, v in fields.items() if not is_metadata_key(k)},
    }
    return hashlib.sha256(canonical_json(body).encode("utf-8")).hexdigest()


def _row_to_item(row) -> SyncQueueItem:
    data = dict(row)
    data["payload"] = json.loads(data.pop("payload_json") or "{}")
    data["metadata"] = json.loads(data.pop("metadata_json") or "{}")
    data["encryption_required"] = bool(data.get("encryption_required"))
    data["sensitive_data"] = bool(data.get("sensitive_data"))
    return SyncQueueItem.model_validate(data)


class SyncQueue:
    def __init__(
        self,
        db_path: str,
        store: RecordStore,
        cfg: Optional[SyncConfig] = None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ):
        self.db_path = db_path
        self.store = store
        self.cfg = cfg or SyncConfig()
        self.clock = clock
        self.rng = rng or random.Random()
        self._listeners: list[QueueListener] = []
        self._conflict_handlers: dict[str, ConflictHandler] = {}
        self._drain_lock = asyncio.Lock()
        self._stopping = False
        self._event_tasks: set = set()

        init_db(self.db_path)
        self.resumed = self._reset_interrupted()

    def _db(self):
        return get_conn(self.db_path)

    def _reset_interrupted(self) -> int:
        conn = self._db()
        cur = conn.execute("UPDATE sync_queue SET status='pending' WHERE status='processing'")
        count = cur.rowcount
        conn.commit()
        conn.close()
        if count:
            logger.info("queue_resumed_interrupted count=%s", count)
        return count

    # ---- boundary ----

    def _validate(self, item: SyncQueueItem) -> None:
        kind = item.payload.kind
        expected_table = PAYLOAD_TABLES.get(kind)
        if expected_table != item.table_name:
            raise ValidationError("payload_table_mismatch", kind=kind, table=item.table_name)
        if isinstance(item.payload, CredentialPayload):
            if not item.encryption_required:
                raise ValidationError("credential_payload_requires_encryption")
        elif item.encryption_required:
            raise EncryptionError("encryption_required_payload_not_encrypted", table=item.table_name)
        if item.operation_type != "create" and not item.record_id:
            raise ValidationError("record_id_required", operation=item.operation_type)

    def _coerce(self, item: Union[SyncQueueItem, dict]) -> SyncQueueItem:
        if isinstance(item, SyncQueueItem):
            return item.model_copy(deep=True)
        data = dict(item)
        data.setdefault("id", uuid.uuid4().hex)
        try:
            return SyncQueueItem.model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError("queue_item_invalid", errors=exc.errors()) from exc

    def enqueue(self, item: Union[SyncQueueItem, dict]) -> SyncQueueItem:
        queued = self._coerce(item)
        self._validate(queued)

        now = self.clock()
        queued.id = queued.id or uuid.uuid4().hex
        queued.status = "pending"
        queued.created_at = queued.created_at or now
        queued.scheduled_for = queued.scheduled_for or now
        queued.checksum = compute_checksum(queued)
        if queued.max_retries <= 0:
            queued.max_retries = self.cfg.max_retries

        conn = self._db()
        try:
            # Only the newest unfinished item for the record may absorb a duplicate;
            # collapsing past a later edit would reorder the writes.
            latest = conn.execute(
                """
                SELECT * FROM sync_queue
                 WHERE user_id=? AND device_id=? AND table_name=? AND record_id IS ?
                   AND status IN ('pending','processing','conflict')
                 ORDER BY seq DESC LIMIT 1
                """,
                (queued.user_id, queued.device_id, queued.table_name, queued.record_id),
            ).fetchone()
            if (
                latest is not None
                and latest["status"] != "conflict"
                and latest["checksum"] == queued.checksum
                and latest["created_at"] >= now - self.cfg.debounce_window_sec
            ):
                logger.debug("queue_enqueue_debounced id=%s checksum=%s", latest["id"], queued.checksum[:12])
                return _row_to_item(latest)

            active = conn.execute(
                "SELECT COUNT(*) FROM sync_queue WHERE status IN ('pending','processing','conflict')"
            ).fetchone()[0]
            evicted = None
            if active >= self.cfg.max_queue_size:
                victim = conn.execute(
                    """
                    SELECT * FROM sync_queue
                     WHERE status='pending' AND priority<=?
                     ORDER BY seq ASC LIMIT 1
                    """,
                    (PRIORITY_LOW,),
                ).fetchone()
                if victim is None:
                    raise QueueExhaustedError("queue_full", size=active)
                conn.execute(
                    "UPDATE sync_queue SET status='cancelled', processed_at=?, error_message=? WHERE id=?",
                    (now, "evicted_queue_full", victim["id"]),
                )
                evicted = _row_to_item(victim)
                evicted.status = "cancelled"

            cur = conn.execute(
                """
                INSERT INTO sync_queue(
                  id,user_id,device_id,operation_type,table_name,record_id,payload_json,expected_version,
                  conflict_strategy,priority,status,retry_count,max_retries,created_at,scheduled_for,
                  checksum,encryption_required,sensitive_data,metadata_json
                ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    queued.id,
                    queued.user_id,
                    queued.device_id,
                    queued.operation_type,
                    queued.table_name,
                    queued.record_id,
                    json.dumps(queued.payload.model_dump(mode="json"), ensure_ascii=False),
                    queued.expected_version,
                    queued.conflict_strategy,
                    queued.priority,
                    queued.status,
                    queued.retry_count,
                    queued.max_retries,
                    queued.created_at,
                    queued.scheduled_for,
                    queued.checksum,
                    int(queued.encryption_required),
                    int(queued.sensitive_data),
                    json.dumps(queued.metadata, ensure_ascii=False, default=str),
                ),
            )
            queued.seq = cur.lastrowid
            conn.commit()
        finally:
            conn.close()

        if evicted is not None:
            logger.warning("queue_item_evicted id=%s table=%s", evicted.id, evicted.table_name)
            self._schedule_event("cancelled", evicted, {"reason": "evicted_queue_full"})
        logger.info(
            "queue_enqueued id=%s table=%s record=%s op=%s priority=%s",
            queued.id, queued.table_name, queued.record_id, queued.operation_type, queued.priority,
        )
        return queued

    # ---- inspection ----

    def get(self, item_id: str) -> Optional[SyncQueueItem]:
        conn = self._db()
        row = conn.execute("SELECT * FROM sync_queue WHERE id=?", (item_id,)).fetchone()
        conn.close()
        return _row_to_item(row) if row else None

    def list_items(
        self,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        table_name: Optional[str] = None,
        record_id: Optional[str] = None,
        limit: int = 500,
    ) -> list[SyncQueueItem]:
        sql = "SELECT * FROM sync_queue WHERE 1=1"
        params: list[Any] = []
        for col, val in (("user_id", user_id), ("status", status), ("table_name", table_name), ("record_id", record_id)):
            if val is not None:
                sql += f" AND {col}=?"
                params.append(val)
        sql += " ORDER BY seq ASC LIMIT ?"
        params.append(int(limit))
        conn = self._db()
        rows = conn.execute(sql, params).fetchall()
        conn.close()
        return [_row_to_item(r) for r in rows]

    def pending_count(self, user_id: Optional[str] = None, device_id: Optional[str] = None) -> int:
        sql = "SELECT COUNT(*) FROM sync_queue WHERE status IN ('pending','processing')"
        params: list[Any] = []
        if user_id is not None:
            sql += " AND user_id=?"
            params.append(user_id)
        if device_id is not None:
            sql += " AND device_id=?"
            params.append(device_id)
        conn = self._db()
        count = conn.execute(sql, params).fetchone()[0]
        conn.close()
        return int(count)

    def stats(self, user_id: Optional[str] = None) -> dict:
        sql = "SELECT status, COUNT(*) AS n FROM sync_queue"
        params: list[Any] = []
        if user_id is not None:
            sql += " WHERE user_id=?"
            params.append(user_id)
        sql += " GROUP BY status"
        conn = self._db()
        rows = conn.execute(sql, params).fetchall()
        conn.close()
        out = {s: 0 for s in ("pending", "processing", "completed", "failed", "conflict", "cancelled")}
        for r in rows:
            out[r["status"]] = int(r["n"])
        out["total"] = sum(out.values())
        return out

    # ---- mutation ----

    def cancel_pending(
        self,
        user_id: str,
        table_name: Optional[str] = None,
        record_id: Optional[str] = None,
        sensitive_only: bool = False,
        include_conflicts: bool = False,
        reason: str = "cancelled",
        device_id: Optional[str] = None,
    ) -> list[SyncQueueItem]:
        statuses = ("pending", "conflict") if include_conflicts else ("pending",)
        sql = f"SELECT * FROM sync_queue WHERE user_id=? AND status IN ({','.join('?' * len(statuses))})"
        params: list[Any] = [user_id, *statuses]
        if table_name is not None:
            sql += " AND table_name=?"
            params.append(table_name)
        if record_id is not None:
            sql += " AND record_id=?"
            params.append(record_id)
        if device_id is not None:
            sql += " AND device_id=?"
            params.append(device_id)
        if sensitive_only:
            sql += " AND sensitive_data=1"
        conn = self._db()
        rows = conn.execute(sql, params).fetchall()
        now = self.clock()
        for r in rows:
            conn.execute(
                "UPDATE sync_queue SET status='cancelled', processed_at=?, error_message=? WHERE id=?",
                (now, reason, r["id"]),
            )
        conn.commit()
        conn.close()

        cancelled = []
        for r in rows:
            item = _row_to_item(r)
            item.status = "cancelled"
            item.error_message = reason
            cancelled.append(item)
            self._schedule_event("cancelled", item, {"reason": reason})
        if cancelled:
            logger.info("queue_cancelled count=%s user=%s reason=%s", len(cancelled), user_id, reason)
        return cancelled

    def settle_conflict(self, item_id: str, status: str = "cancelled", message: str = "conflict_resolved") -> None:
        conn = self._db()
        conn.execute(
            "UPDATE sync_queue SET status=?, processed_at=?, error_message=? WHERE id=? AND status='conflict'",
            (status, self.clock(), message, item_id),
        )
        conn.commit()
        conn.close()

    def _update(self, item: SyncQueueItem, **fields: Any) -> None:
        for k, v in fields.items():
            setattr(item, k, v)
        cols = ", ".join(f"{k}=?" for k in fields)
        conn = self._db()
        conn.execute(f"UPDATE sync_queue SET {cols} WHERE id=?", (*fields.values(), item.id))
        conn.commit()
        conn.close()

    def _rebase_followers(self, item: SyncQueueItem, new_version: Optional[int]) -> int:
        if new_version is None or item.record_id is None:
            return 0
        conn = self._db()
        cur = conn.execute(
            """
            UPDATE sync_queue
               SET expected_version=?
             WHERE status='pending' AND user_id=? AND device_id=? AND table_name=? AND record_id=?
               AND seq>? AND expected_version IS ?
            """,
            (
                new_version,
                item.user_id,
                item.device_id,
                item.table_name,
                item.record_id,
                item.seq,
                item.expected_version,
            ),
        )
        count = cur.rowcount
        conn.commit()
        conn.close()
        return count

    # ---- events ----

    def subscribe(self, listener: QueueListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def set_conflict_handler(self, table_name: str, handler: ConflictHandler) -> None:
        self._conflict_handlers[table_name] = handler

    async def _emit(self, event: QueueEvent, item: SyncQueueItem, detail: Optional[dict] = None) -> None:
        for listener in list(self._listeners):
            try:
                out = listener(event, item, detail or {})
                if inspect.isawaitable(out):
                    await out
            except Exception as e:
                logger.exception("queue_listener_failed event=%s id=%s error=%s", event, item.id, e)

    def _schedule_event(self, event: QueueEvent, item: SyncQueueItem, detail: dict) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is None:
            asyncio.run(self._emit(event, item, detail))
        else:
            task = loop.create_task(self._emit(event, item, detail))
            self._event_tasks.add(task)
            task.add_done_callback(self._event_tasks.discard)

    # ---- drain ----

    def _backoff(self, retry_count: int) -> float:
        delay = min(self.cfg.backoff_cap_sec, self.cfg.backoff_base_sec * (2 ** retry_count))
        return delay + self.rng.uniform(0, delay * self.cfg.backoff_jitter_ratio)

    def _next_eligible(self, user_id: Optional[str], include_sensitive: bool) -> Optional[SyncQueueItem]:
        sql = """
            SELECT q.* FROM sync_queue q
             WHERE q.status='pending' AND q.scheduled_for<=?
               AND NOT EXISTS (
                 SELECT 1 FROM sync_queue p
                  WHERE p.seq<q.seq AND p.user_id=q.user_id AND p.device_id=q.device_id
                    AND p.table_name=q.table_name AND p.record_id IS q.record_id
                    AND p.status IN ('pending','processing','conflict')
               )
        """
        params: list[Any] = [self.clock()]
        if user_id is not None:
            sql += " AND q.user_id=?"
            params.append(user_id)
        if not include_sensitive:
            sql += " AND q.sensitive_data=0"
        sql += " ORDER BY q.priority DESC, q.seq ASC LIMIT 1"
        conn = self._db()
        row = conn.execute(sql, params).fetchone()
        conn.close()
        return _row_to_item(row) if row else None

    def stop(self) -> None:
        """Stop after the in-flight item; that item finishes or is retried later."""
        self._stopping = True

    async def drain(self, user_id: Optional[str] = None, include_sensitive: bool = True) -> dict:
        summary = {"processed": 0, "completed": 0, "retried": 0, "failed": 0, "conflicts": 0}
        async with self._drain_lock:
            self._stopping = False
            while not self._stopping:
                item = self._next_eligible(user_id, include_sensitive)
                if item is None:
                    break
                summary["processed"] += 1
                outcome = await self._process(item)
                summary[outcome] += 1
                if outcome == "retried":
                    # Store is unreachable; remaining items wait for the next pass.
                    break
                await asyncio.sleep(0)
        if summary["processed"]:
            logger.info("queue_drained %s", json.dumps(summary, ensure_ascii=False))
        return summary

    async def _execute(self, item: SyncQueueItem) -> Optional[dict]:
        if item.encryption_required and not isinstance(item.payload, CredentialPayload):
            raise EncryptionError("encryption_required_payload_not_encrypted")
        fields = item.payload.model_dump(mode="json")["fields"]
        if isinstance(item.payload, CredentialPayload):
            fields["user_id"] = item.user_id
        return await self.store.write(
            item.table_name,
            item.record_id or item.id,
            fields,
            expected_version=item.expected_version,
            operation=item.operation_type,
            device_id=item.device_id,
        )

    async def _process(self, item: SyncQueueItem) -> str:
        self._update(item, status="processing")
        try:
            result = await self._execute(item)
        except VersionConflictError as e:
            return await self._park_conflict(item, e)
        except (AuthorizationError, EncryptionError, ValidationError) as e:
            self._update(item, status="failed", processed_at=self.clock(), error_message=f"{e.code}: {e}")
            logger.error("queue_item_failed id=%s terminal=1 error=%s", item.id, e.code)
            await self._emit("failed", item, {"error": e.code, "terminal": True})
            return "failed"
        except StorageUnavailableError:
            self._update(item, status="pending")
            raise
        except Exception as e:
            return await self._retry_fail(item, e)

        self._update(item, status="completed", processed_at=self.clock(), error_message=None)
        new_version = (result or {}).get("version") if isinstance(result, dict) else None
        rebased = self._rebase_followers(item, new_version)
        logger.info("queue_item_completed id=%s version=%s rebased=%s", item.id, new_version, rebased)
        await self._emit("completed", item, {"result": result})
        return "completed"

    async def _retry_fail(self, item: SyncQueueItem, error: Exception) -> str:
        err = f"{getattr(error, 'code', type(error).__name__)}: {error}"
        attempt = item.retry_count + 1
        if not isinstance(error, SyncError):
            logger.exception("queue_item_unexpected_error id=%s", item.id)
        if attempt >= item.max_retries:
            self._update(item, status="failed", retry_count=attempt, processed_at=self.clock(), error_message=err)
            logger.error("queue_item_failed id=%s attempts=%s error=%s", item.id, attempt, err)
            await self._emit("failed", item, {"error": err, "terminal": False, "exhausted": True})
            return "failed"

        wait_sec = self._backoff(attempt)
        self._update(
            item,
            status="pending",
            retry_count=attempt,
            scheduled_for=self.clock() + wait_sec,
            error_message=err,
        )
        logger.warning("queue_item_retry id=%s attempt=%s wait_sec=%.2f error=%s", item.id, attempt, wait_sec, err)
        return "retried"

    async def _park_conflict(self, item: SyncQueueItem, error: VersionConflictError) -> str:
        self._update(item, status="conflict", processed_at=self.clock(), error_message=str(error))
        logger.warning("queue_item_conflict id=%s table=%s record=%s", item.id, item.table_name, item.record_id)
        handler = self._conflict_handlers.get(item.table_name)
        if handler is not None:
            try:
                conflict_id = await handler(item, error.current)
            except Exception as e:
                logger.exception("queue_conflict_handler_failed id=%s error=%s", item.id, e)
                conflict_id = None
            if conflict_id:
                self._update(item, conflict_id=conflict_id)
        await self._emit("conflict", item, {"remote": error.current})
        return "conflicts"
