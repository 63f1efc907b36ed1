"""
ClinicSync backend: FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from clinicsync import __version__
from clinicsync.api.key_routes import router as key_router
from clinicsync.api.sync_routes import http_status, router as sync_router
from clinicsync.config.settings import settings
from clinicsync.sync.engine import SyncEngine, build_engine
from clinicsync.sync.errors import SyncError

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler(settings.data_dir / "clinicsync.log"),
    ],
)

logger = logging.getLogger(__name__)


def create_app(engine: Optional[SyncEngine] = None) -> FastAPI:
    """Build the API around ``engine``, or one wired from settings at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("ClinicSync backend starting...")
        if app.state.engine is None:
            app.state.engine = build_engine(settings)
        current = app.state.engine
        logger.info("Sync engine ready (tenant: %s, origin: %s)", current.tenant_id, current.origin_id)
        if settings.sync_enabled:
            await current.start_auto_sync()
        logger.info("API ready at http://%s:%s", settings.api_host, settings.api_port)
        yield
        logger.info("ClinicSync backend shutting down...")
        await current.stop_auto_sync()

    app = FastAPI(
        title="ClinicSync",
        description="Offline-first encrypted sync and backup for clinic data",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Tighten in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(sync_router)
    app.include_router(key_router)

    @app.exception_handler(SyncError)
    async def sync_error_handler(request: Request, exc: SyncError):
        return JSONResponse(
            status_code=http_status(exc.category, exc.kind.value),
            content={"detail": exc.to_dict()},
        )

    @app.get("/health")
    def health():
        return {"status": "ok", "version": __version__}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "clinicsync.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )
