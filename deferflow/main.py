"""ASGI entry point.

Serve with ``uvicorn deferflow.main:app``. The module-level ``app`` is built
from the environment on first access, so importing this module has no side
effects. Tests and embedders call ``create_app`` with their own runtime.
"""
import time
from typing import Optional

from fastapi import FastAPI, Request

from .api import jobs as jobs_api
from .api import orders as orders_api
from .config import Settings
from .logging_config import get_logger, setup_logging
from .metrics import metrics_response, request_latency_seconds
from .runtime import Runtime, build_runtime

logger = get_logger(__name__)


def create_app(runtime: Optional[Runtime] = None, settings: Optional[Settings] = None) -> FastAPI:
    runtime = runtime or build_runtime(settings)
    setup_logging(runtime.settings.log_level, runtime.settings.log_json)

    app = FastAPI(title="deferflow control plane")
    app.state.runtime = runtime
    app.state.settings = runtime.settings
    app.state.store = runtime.store
    app.state.queue = runtime.queue
    app.state.registry = runtime.registry
    app.state.render_cache = runtime.render_cache
    app.state.orders = runtime.orders

    app.include_router(jobs_api.router)
    app.include_router(orders_api.router)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        start = time.time()
        try:
            response = await call_next(request)
            return response
        finally:
            request_latency_seconds.observe(time.time() - start)

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok"}

    @app.get("/readyz")
    async def readyz():
        try:
            ready = await runtime.store.ping()
        except Exception as exc:
            logger.warning("readiness_check_failed", error=str(exc))
            ready = False
        return {"ready": ready}

    @app.get("/metrics")
    async def metrics():
        return metrics_response()

    return app


_app: Optional[FastAPI] = None


def __getattr__(name: str):
    global _app
    if name == "app":
        if _app is None:
            _app = create_app()
        return _app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
