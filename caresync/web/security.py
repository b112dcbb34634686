from __future__ import annotations

import ipaddress
import logging
import os
from typing import Iterable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from caresync.core.config import AppConfig

logger = logging.getLogger("web.security")

ALLOWED_NETS_ENV = "CARESYNC_ALLOWED_NETS"


def parse_nets(raw: Iterable[str]) -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    nets = []
    for part in raw:
        s = (part or "").strip()
        if not s:
            continue
        try:
            nets.append(ipaddress.ip_network(s, strict=False))
        except ValueError as exc:
            raise ValueError(f"invalid_allowed_net: {s}") from exc
    return nets


class NetworkAllowlistMiddleware(BaseHTTPMiddleware):
    """Rejects every request whose client address is outside the allowed networks.

    A broken allowlist fails closed with 503 rather than opening the API.
    """

    def __init__(self, app, allowed_nets: Iterable[str]):
        super().__init__(app)
        self.allowed = []
        self.allowlist_error: Optional[str] = None
        try:
            self.allowed = parse_nets(allowed_nets)
        except ValueError as exc:
            self.allowlist_error = str(exc)
            logger.error("allowlist_invalid error=%s", exc)

    async def dispatch(self, request: Request, call_next):
        if self.allowlist_error:
            return JSONResponse({"ok": False, "detail": "allowlist_misconfigured"}, status_code=503)

        client_host = request.client.host if request.client else ""
        try:
            ip = ipaddress.ip_address(client_host)
        except ValueError:
            logger.warning("request_rejected reason=client_unknown path=%s", request.url.path)
            return JSONResponse({"ok": False, "detail": "forbidden"}, status_code=403)

        if not any(ip in net for net in self.allowed):
            logger.warning("request_rejected reason=not_allowed client=%s path=%s", client_host, request.url.path)
            return JSONResponse({"ok": False, "detail": "forbidden"}, status_code=403)

        return await call_next(request)


def get_allowed_nets(cfg: AppConfig) -> list[str]:
    raw = os.environ.get(ALLOWED_NETS_ENV, "").strip()
    if raw:
        return [s.strip() for s in raw.split(",") if s.strip()]
    return list(cfg.web_allowed_nets)
