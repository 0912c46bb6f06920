from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from sessiongate.api.error_handling import register_exception_handlers
from sessiongate.api.routes import router
from sessiongate.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release the store on shutdown."""
    from sessiongate.service.runtime import get_runtime

    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app() -> FastAPI:
    app = FastAPI(title="Sessiongate", version=__version__, lifespan=lifespan)

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag every log line of a request with the caller's X-Request-ID, or a new one."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.get("/healthz")
    async def health() -> JSONResponse:
        from sessiongate.service.runtime import get_runtime

        runtime = get_runtime()
        store_type = type(runtime.store).__name__
        try:
            store_ok = await asyncio.wait_for(
                runtime.store.ping(), HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
            store_ok = False
        except Exception as exc:
            logger.error("health_check_store_failed", error=str(exc))
            store_ok = False
        body: Dict[str, Any] = {
            "status": "healthy" if store_ok else "unhealthy",
            "checks": {
                "store": {"status": "healthy" if store_ok else "unhealthy", "type": store_type}
            },
            "version": __version__,
            "timestamp": datetime.utcnow().isoformat(),
        }
        return JSONResponse(status_code=200 if store_ok else 503, content=body)

    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()
