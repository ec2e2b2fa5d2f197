import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

from . import metrics
from .config import Settings, load_settings
from .pipeline import ProjectPipeline, project_router
from .pipeline.project_store import ProjectStore, build_project_store

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[ProjectStore] = None,
    pipeline: Optional[ProjectPipeline] = None,
) -> FastAPI:
    """Build the service. Anything not passed in is built from settings at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        cfg = settings or load_settings()
        app.state.settings = cfg
        app.state.store = store or build_project_store(cfg)
        app.state.pipeline = pipeline or ProjectPipeline.from_settings(cfg, app.state.store)
        logger.info(
            f"CGI studio starting up (gemini={'set' if cfg.gemini_api_key else 'MISSING'}, "
            f"piapi={'set' if cfg.piapi_api_key else 'MISSING'}, supabase={cfg.supabase_configured})"
        )
        yield
        logger.info("CGI studio shutting down — cancelling active runs")
        await app.state.pipeline.aclose()

    app = FastAPI(title="CGI Studio", lifespan=lifespan)
    app.include_router(project_router)

    @app.get("/health")
    def health_check():
        """Verify the service is running and which providers are configured."""
        cfg: Settings = app.state.settings
        return {
            "status": "ok",
            "gemini_api_key_set": bool(cfg.gemini_api_key),
            "piapi_api_key_set": bool(cfg.piapi_api_key),
            "supabase_configured": cfg.supabase_configured,
            "r2_configured": cfg.r2_configured,
        }

    @app.get("/metrics")
    def metrics_endpoint():
        """Return a snapshot of pipeline metrics."""
        return metrics.get_snapshot()

    return app


def run():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    settings = load_settings()
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    run()
