from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger("audit")


class AuditSink(Protocol):
    def record(self, event: str, **details: Any) -> None:
        ...


class LoggingAuditSink:
    def record(self, event: str, **details: Any) -> None:
        logger.info("%s %s", event, json.dumps(details, ensure_ascii=False, sort_keys=True, default=str))


class JsonlAuditSink:
    """Append-only JSON lines file, one object per audit event."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def record(self, event: str, **details: Any) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"event": event, "recorded_at": datetime.now(timezone.utc).isoformat(), **details}
        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(payload, ensure_ascii=False, default=str))
            f.write("\n")


class MemoryAuditSink:
    def __init__(self):
        self.events: list[tuple[str, dict[str, Any]]] = []

    def record(self, event: str, **details: Any) -> None:
        self.events.append((event, details))

    def names(self) -> list[str]:
        return [name for name, _details in self.events]


def emit_audit(sink: AuditSink | None, event: str, **details: Any) -> None:
    if sink is None:
        return
    try:
        sink.record(event, **details)
    except Exception as e:
        logger.warning("audit_sink_failed event=%s error=%s", event, e)
