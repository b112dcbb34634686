"""Backing store and real-time change feed.

The store is a versioned document store: every record carries ``updated_at``
and an integer ``version``, and writes are conditional on the version the
writer last read. A mismatch raises ``VersionConflictError`` carrying the
current remote record so the caller can hand both sides to the resolver.
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
import uuid
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

import requests
from pydantic import BaseModel, Field

from caresync.core.errors import (
    AuthorizationError,
    NetworkError,
    StorageUnavailableError,
    ValidationError,
    VersionConflictError,
)
from caresync.sync.models import FIELD_TIMESTAMPS_KEY, now_iso, record_version

logger = logging.getLogger("sync.store")


class ChangeNotification(BaseModel):
    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    table: str
    record_id: str
    user_id: str
    # Device that authored the change; None when unknown.
    device_id: Optional[str] = None
    version: Optional[int] = None
    received_at: str = Field(default_factory=now_iso)


ChangeCallback = Callable[[ChangeNotification], Union[None, Awaitable[None]]]


class ChangeFeed:
    """Per-user push channel for record change notifications."""

    def __init__(self):
        self._subscribers: dict[str, list[ChangeCallback]] = {}

    def subscribe(self, user_id: str, callback: ChangeCallback) -> None:
        self._subscribers.setdefault(user_id, []).append(callback)

    def unsubscribe(self, user_id: str, callback: Optional[ChangeCallback] = None) -> None:
        if callback is None:
            self._subscribers.pop(user_id, None)
            return
        remaining = [cb for cb in self._subscribers.get(user_id, []) if cb is not callback]
        if remaining:
            self._subscribers[user_id] = remaining
        else:
            self._subscribers.pop(user_id, None)

    def subscriber_count(self, user_id: str) -> int:
        return len(self._subscribers.get(user_id, []))

    async def publish(self, change: ChangeNotification) -> int:
        delivered = 0
        for callback in list(self._subscribers.get(change.user_id, [])):
            try:
                out = callback(change)
                if inspect.isawaitable(out):
                    await out
                delivered += 1
            except Exception as e:
                logger.exception("change_feed_callback_failed table=%s record=%s error=%s", change.table, change.record_id, e)
        return delivered


class RecordStore(Protocol):
    async def ping(self) -> bool:
        ...

    async def get(self, table: str, record_id: str) -> Optional[dict]:
        ...

    async def list(self, table: str, **filters: Any) -> list[dict]:
        ...

    async def write(
        self,
        table: str,
        record_id: str,
        fields: dict,
        *,
        expected_version: Optional[int],
        operation: str = "update",
        device_id: Optional[str] = None,
    ) -> Optional[dict]:
        ...

    async def upsert(self, table: str, record_id: str, row: dict) -> dict:
        ...

    async def insert(self, table: str, row: dict) -> dict:
        ...


def _merge_field_timestamps(current: dict, fields: dict) -> dict:
    merged = dict(current.get(FIELD_TIMESTAMPS_KEY) or {})
    merged.update(fields.get(FIELD_TIMESTAMPS_KEY) or {})
    return merged


class MemoryRecordStore:
    """In-process store used for local-only mode and tests.

    ``online`` toggles connectivity; ``fail_next`` queues exceptions raised by
    the next remote calls.
    """

    def __init__(self, feed: Optional[ChangeFeed] = None, user_key: str = "user_id"):
        self.feed = feed
        self.user_key = user_key
        self.online = True
        self.tables: dict[str, dict[str, dict]] = {}
        self.write_log: list[tuple[str, str, str, dict]] = []
        self._failures: list[Exception] = []
        self._deliveries: set = set()

    def fail_next(self, *errors: Exception) -> None:
        self._failures.extend(errors)

    def seed(self, table: str, record_id: str, row: dict) -> dict:
        stored = copy.deepcopy(row)
        self.tables.setdefault(table, {})[record_id] = stored
        return copy.deepcopy(stored)

    def _check_online(self) -> None:
        if self._failures:
            raise self._failures.pop(0)
        if not self.online:
            raise NetworkError("store_offline")

    async def ping(self) -> bool:
        return self.online

    async def get(self, table: str, record_id: str) -> Optional[dict]:
        self._check_online()
        row = self.tables.get(table, {}).get(record_id)
        return copy.deepcopy(row) if row is not None else None

    async def list(self, table: str, **filters: Any) -> list[dict]:
        self._check_online()
        out = []
        for row in self.tables.get(table, {}).values():
            if all(row.get(k) == v for k, v in filters.items()):
                out.append(copy.deepcopy(row))
        return out

    async def write(
        self,
        table: str,
        record_id: str,
        fields: dict,
        *,
        expected_version: Optional[int],
        operation: str = "update",
        device_id: Optional[str] = None,
    ) -> Optional[dict]:
        self._check_online()
        rows = self.tables.setdefault(table, {})
        current = rows.get(record_id)

        if operation == "create" and current is not None:
            raise VersionConflictError("record_exists", current=copy.deepcopy(current))
        if operation != "create":
            if current is None and expected_version not in (None, 0):
                raise VersionConflictError("record_missing", current=None)
            if current is not None and record_version(current) != (expected_version or 0):
                raise VersionConflictError(
                    "version_mismatch",
                    current=copy.deepcopy(current),
                    expected=expected_version,
                    actual=record_version(current),
                )

        if operation == "delete":
            rows.pop(record_id, None)
            self.write_log.append((table, record_id, operation, {}))
            await self._notify(table, record_id, current or {}, device_id, None)
            return None

        base = copy.deepcopy(current) if current else {}
        base.update(copy.deepcopy(fields))
        if FIELD_TIMESTAMPS_KEY in fields or (current and FIELD_TIMESTAMPS_KEY in current):
            base[FIELD_TIMESTAMPS_KEY] = _merge_field_timestamps(current or {}, fields)
        base["updated_at"] = fields.get("updated_at") or now_iso()
        base["version"] = record_version(current) + 1
        if device_id:
            base["device_id"] = device_id
        rows[record_id] = base
        self.write_log.append((table, record_id, operation, copy.deepcopy(fields)))
        await self._notify(table, record_id, base, device_id, base["version"])
        return copy.deepcopy(base)

    async def upsert(self, table: str, record_id: str, row: dict) -> dict:
        self._check_online()
        stored = copy.deepcopy(row)
        self.tables.setdefault(table, {})[record_id] = stored
        return copy.deepcopy(stored)

    async def insert(self, table: str, row: dict) -> dict:
        self._check_online()
        stored = copy.deepcopy(row)
        stored.setdefault("id", uuid.uuid4().hex)
        self.tables.setdefault(table, {})[stored["id"]] = stored
        return copy.deepcopy(stored)

    async def _notify(self, table: str, record_id: str, row: dict, device_id: Optional[str], version: Optional[int]):
        if self.feed is None:
            return
        user_id = row.get(self.user_key) or record_id
        change = ChangeNotification(
            table=table,
            record_id=record_id,
            user_id=str(user_id),
            device_id=device_id,
            version=version,
        )
        # Delivered asynchronously, like a real push channel.
        task = asyncio.get_running_loop().create_task(self.feed.publish(change))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)

    async def settle(self) -> None:
        """Wait until every queued change notification has been delivered."""
        while self._deliveries:
            await asyncio.gather(*list(self._deliveries))


class RestRecordStore:
    """PostgREST-style HTTP store (Supabase REST API)."""

    def __init__(self, base_url: str, api_key: str, timeout: int = 30, session: Optional[requests.Session] = None):
        if not base_url:
            raise StorageUnavailableError("store_base_url_missing")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key or ""
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self, prefer: Optional[str] = None) -> dict[str, str]:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _request(self, method: str, table: str, params: dict[str, str], body: Any = None, prefer: Optional[str] = None):
        url = f"{self.base_url}/rest/v1/{table}"
        try:
            res = self.session.request(
                method,
                url,
                params=params,
                json=body,
                headers=self._headers(prefer),
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise NetworkError(f"store_unreachable: {exc}") from exc

        if res.status_code >= 500:
            raise NetworkError(f"store_error_status_{res.status_code}")
        if res.status_code in (401, 403):
            raise AuthorizationError(f"store_rejected_status_{res.status_code}")
        if res.status_code == 409:
            raise VersionConflictError("store_conflict_status_409")
        if res.status_code >= 400:
            raise ValidationError(f"store_bad_request_status_{res.status_code}: {res.text[:200]}")
        if not res.content:
            return []
        payload = res.json()
        return payload if isinstance(payload, list) else [payload]

    async def _call(self, method: str, table: str, params: dict[str, str], body: Any = None, prefer: Optional[str] = None):
        return await asyncio.to_thread(self._request, method, table, params, body, prefer)

    async def ping(self) -> bool:
        try:
            await self._call("GET", "user_settings", {"select": "id", "limit": "1"})
            return True
        except Exception:
            return False

    async def get(self, table: str, record_id: str) -> Optional[dict]:
        rows = await self._call("GET", table, {"id": f"eq.{record_id}", "select": "*"})
        return rows[0] if rows else None

    async def list(self, table: str, **filters: Any) -> list[dict]:
        params = {k: f"eq.{v}" for k, v in filters.items()}
        params["select"] = "*"
        return await self._call("GET", table, params)

    async def write(
        self,
        table: str,
        record_id: str,
        fields: dict,
        *,
        expected_version: Optional[int],
        operation: str = "update",
        device_id: Optional[str] = None,
    ) -> Optional[dict]:
        body = dict(fields)
        body.setdefault("updated_at", now_iso())
        if device_id:
            body["device_id"] = device_id

        if operation == "create" or (operation != "delete" and not expected_version):
            body["id"] = record_id
            body["version"] = 1
            try:
                rows = await self._call("POST", table, {}, body, prefer="return=representation")
            except VersionConflictError:
                raise VersionConflictError("record_exists", current=await self.get(table, record_id))
            return rows[0] if rows else body

        params = {"id": f"eq.{record_id}", "version": f"eq.{int(expected_version or 0)}"}
        if operation == "delete":
            rows = await self._call("DELETE", table, params, prefer="return=representation")
            if not rows:
                raise VersionConflictError("version_mismatch", current=await self.get(table, record_id))
            return None

        body["version"] = int(expected_version or 0) + 1
        rows = await self._call("PATCH", table, params, body, prefer="return=representation")
        if not rows:
            raise VersionConflictError("version_mismatch", current=await self.get(table, record_id))
        return rows[0]

    async def upsert(self, table: str, record_id: str, row: dict) -> dict:
        body = dict(row)
        body["id"] = record_id
        rows = await self._call(
            "POST", table, {"on_conflict": "id"}, body, prefer="resolution=merge-duplicates,return=representation"
        )
        return rows[0] if rows else body

    async def insert(self, table: str, row: dict) -> dict:
        rows = await self._call("POST", table, {}, dict(row), prefer="return=representation")
        return rows[0] if rows else dict(row)
