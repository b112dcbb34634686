import asyncio
import json

import pytest
import requests

from caresync.core.errors import AuthorizationError, NetworkError, ValidationError, VersionConflictError
from caresync.sync.store import RestRecordStore


class _Response:
    def __init__(self, status_code: int = 200, payload=None):
        self.status_code = status_code
        self._payload = payload
        self.content = b"" if payload is None else json.dumps(payload).encode("utf-8")
        self.text = self.content.decode("utf-8")

    def json(self):
        return self._payload


class _Session:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, params=None, json=None, headers=None, timeout=None):
        self.calls.append({"method": method, "url": url, "params": params, "json": json, "headers": headers})
        res = self.responses.pop(0)
        if isinstance(res, Exception):
            raise res
        return res


def _store(*responses) -> tuple[RestRecordStore, _Session]:
    session = _Session(*responses)
    return RestRecordStore("https://db.example.test/", "anon-key", timeout=5, session=session), session


def test_get_returns_first_row_and_sends_auth_headers():
    store, session = _store(_Response(200, [{"id": "u1", "theme": "dark", "version": 2}]))

    row = asyncio.run(store.get("user_settings", "u1"))

    assert row["theme"] == "dark"
    call = session.calls[0]
    assert call["url"] == "https://db.example.test/rest/v1/user_settings"
    assert call["params"]["id"] == "eq.u1"
    assert call["headers"]["apikey"] == "anon-key"
    assert call["headers"]["Authorization"] == "Bearer anon-key"


def test_conditional_update_patches_with_version_filter():
    store, session = _store(_Response(200, [{"id": "u1", "theme": "light", "version": 4}]))

    row = asyncio.run(
        store.write("user_settings", "u1", {"theme": "light"}, expected_version=3, operation="update", device_id="dev-a")
    )

    assert row["version"] == 4
    call = session.calls[0]
    assert call["method"] == "PATCH"
    assert call["params"] == {"id": "eq.u1", "version": "eq.3"}
    assert call["json"]["version"] == 4
    assert call["json"]["device_id"] == "dev-a"


def test_empty_patch_response_is_version_conflict_with_current_row():
    current = {"id": "u1", "theme": "dark", "version": 7}
    store, _session = _store(_Response(200, []), _Response(200, [current]))

    with pytest.raises(VersionConflictError) as exc_info:
        asyncio.run(store.write("user_settings", "u1", {"theme": "light"}, expected_version=3))

    assert exc_info.value.current == current


def test_create_conflict_reports_existing_row():
    current = {"id": "u1", "version": 1}
    store, session = _store(_Response(409, {"message": "duplicate key"}), _Response(200, [current]))

    with pytest.raises(VersionConflictError) as exc_info:
        asyncio.run(store.write("user_settings", "u1", {"theme": "light"}, expected_version=None, operation="create"))

    assert session.calls[0]["method"] == "POST"
    assert session.calls[0]["json"]["version"] == 1
    assert exc_info.value.current == current


@pytest.mark.parametrize(
    "response, error",
    [
        (_Response(503, {"message": "down"}), NetworkError),
        (_Response(401, {"message": "jwt expired"}), AuthorizationError),
        (_Response(422, {"message": "bad column"}), ValidationError),
        (requests.ConnectionError("refused"), NetworkError),
        (requests.Timeout("slow"), NetworkError),
    ],
)
def test_error_mapping(response, error):
    store, _session = _store(response)

    with pytest.raises(error):
        asyncio.run(store.get("user_settings", "u1"))


def test_ping_is_false_when_unreachable():
    store, _session = _store(requests.ConnectionError("refused"))
    assert asyncio.run(store.ping()) is False
