from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from tenantauth.api.error_handling import register_exception_handlers
from tenantauth.api.routes import router
from tenantauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from tenantauth.service.runtime import get_runtime

    runtime = get_runtime()
    yield
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app() -> FastAPI:
    app = FastAPI(title="TenantAuth", version=__version__, lifespan=lifespan)

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        cid = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = cid
        return response

    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()
