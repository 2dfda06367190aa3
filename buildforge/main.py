from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from .api.routes import router as api_router
from .core.config import Settings, get_settings
from .core.logging import configure_logging, get_logger
from .orchestration.driver import ActionSink
from .orchestration.orchestrator import Orchestrator
from .services.llm import AgentBackend

logger = get_logger(name=__name__)


def create_app(
    settings: Settings | None = None,
    *,
    backend: AgentBackend | None = None,
    action_sink: ActionSink | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.observability.log_level)

    @asynccontextmanager
    async def app_lifespan(app: FastAPI):
        orchestrator = Orchestrator.from_settings(settings, backend=backend, action_sink=action_sink)
        app.state.orchestrator = orchestrator
        try:
            yield
        finally:
            await orchestrator.aclose()
            logger.info("orchestrator_stopped")

    app = FastAPI(title="BuildForge Orchestration", version="0.1.0", lifespan=app_lifespan)
    app.state.settings = settings
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.frontend_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(api_router, prefix=settings.api_v1_prefix)

    @app.get("/", tags=["health"])
    async def root() -> dict[str, str]:
        return {"message": "BuildForge orchestration engine running"}

    if settings.observability.prometheus_enabled:

        @app.get("/metrics", tags=["observability"])
        async def metrics() -> Response:
            return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
