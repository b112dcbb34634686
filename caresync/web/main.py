from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from caresync.core.config import AppConfig, load_config
from caresync.runtime import build_runtime
from caresync.web import api as api_module
from caresync.web.security import NetworkAllowlistMiddleware, get_allowed_nets


def build_app(cfg: Optional[AppConfig] = None) -> FastAPI:
    cfg = cfg or load_config()

    @asynccontextmanager
    async def lifespan(_api: FastAPI):
        runtime = build_runtime(cfg)
        api_module.set_runtime(runtime)
        try:
            yield
        finally:
            await runtime.manager.shutdown()
            api_module.set_runtime(None)

    api = FastAPI(title="caresync", version="0.1.0", lifespan=lifespan)
    api.add_middleware(NetworkAllowlistMiddleware, allowed_nets=get_allowed_nets(cfg))
    api.include_router(api_module.router)
    return api


def main():
    import uvicorn

    cfg = load_config()

    from caresync.core.logging_setup import setup_logging

    setup_logging(cfg.logging.level, cfg.logging.file)

    uvicorn.run(
        build_app(cfg),
        host=cfg.web_bind_host,
        port=cfg.web_port,
        log_level=cfg.logging.level.lower(),
        log_config=None,
    )


if __name__ == "__main__":
    main()
