from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"

# Third-party loggers that are too chatty at INFO for a sync daemon.
QUIET_LOGGERS = ("urllib3", "requests", "httpx")


def _file_handler(path: str, level: int, fmt: logging.Formatter) -> logging.FileHandler:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(fmt)
    return handler


def setup_logging(level: str, logfile: str, audit_logfile: Optional[str] = None):
    """Configure root handlers once per process.

    With ``audit_logfile`` set, records from the ``audit`` logger are also
    written to that file so the audit trail can be shipped separately.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(log_level)

    # Reconfiguring must not stack handlers.
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(LOG_FORMAT)
    root.addHandler(_file_handler(logfile, log_level, fmt))

    console = logging.StreamHandler()
    console.setLevel(log_level)
    console.setFormatter(fmt)
    root.addHandler(console)

    audit_logger = logging.getLogger("audit")
    audit_logger.handlers.clear()
    if audit_logfile:
        audit_logger.addHandler(_file_handler(audit_logfile, logging.INFO, fmt))

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv = logging.getLogger(name)
        uv.handlers.clear()
        uv.setLevel(log_level)
        uv.propagate = True

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    root.info("logging initialized level=%s file=%s audit=%s", level.upper(), logfile, audit_logfile or "-")
