import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from opscache.core.config import get_settings
from opscache.core.errors import StoreUnavailable, ValidationError
from opscache.routers import monitoring
from opscache.services import Services, build_services

logger = logging.getLogger(__name__)


def create_app(services: Services | None = None) -> FastAPI:
    """
    Build the monitoring app. Prebuilt ``services`` are used as-is and are
    not started or closed by the app (tests pass their own).
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            app.state.services = services
            yield
            return

        logging.basicConfig(level=settings.log_level.upper())
        built = build_services(settings)
        app.state.services = built
        if await built.store.ping():
            logger.info("Redis connection established")
        else:
            logger.warning("Redis unreachable at startup; running degraded")
        if settings.sweep_enabled:
            built.sweeper.start()
        try:
            yield
        finally:
            await built.close()

    app = FastAPI(
        title="opscache",
        description="Performance metrics and tagged cache over Redis",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.include_router(monitoring.router)

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": str(exc)},
        )

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": str(exc)},
        )

    if settings.request_metrics_enabled:

        @app.middleware("http")
        async def record_request(request: Request, call_next):
            started = time.perf_counter()
            status_code = 500
            try:
                response = await call_next(request)
                status_code = response.status_code
                return response
            finally:
                route = request.scope.get("route")
                path = getattr(route, "path", None) or "unmatched"
                elapsed_ms = (time.perf_counter() - started) * 1000
                await request.app.state.services.aggregator.track_request(
                    f"{request.method} {path}", elapsed_ms, status_code
                )

    @app.get("/")
    async def root():
        return {"message": "opscache monitoring API", "docs": "/docs", "version": "1.0.0"}

    @app.get("/health")
    async def health_check(request: Request):
        store = await request.app.state.services.store.health()
        return {"status": "healthy" if store["healthy"] else "degraded", "store": store}

    return app


app = create_app()
