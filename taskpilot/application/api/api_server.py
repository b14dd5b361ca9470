from contextlib import asynccontextmanager, AsyncExitStack
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Request
import structlog

from taskpilot.application.api.dependencies import get_services
from taskpilot.application.api.route.agent import router as agent_router
from taskpilot.application.api.services import ServiceContainer, build_services
from taskpilot.config.app_config import ServiceSettings, get_service_settings
from taskpilot.infrastructure.observability.logging import metrics, setup_logging

logger = structlog.get_logger(__name__)

ServicesFactory = Callable[[ServiceSettings], ServiceContainer]


def create_app(settings: Optional[ServiceSettings] = None, services_factory: Optional[ServicesFactory] = None) -> FastAPI:
    """ASGI app; services are built in the lifespan and kept on app.state"""

    settings = settings or get_service_settings()
    services_factory = services_factory or build_services

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT, settings.SERVICE_NAME)
        logger.info("Starting taskpilot service", environment=settings.APP_ENV)

        async with AsyncExitStack() as stack:
            services = services_factory(settings)
            stack.push_async_callback(services.aclose)
            app.state.services = services
            logger.info("Service resources initialized")

            try:
                # lets FastAPI process requests during yield
                yield
            finally:
                logger.info("Shutting down service resources")

    # disable FastAPI docs outside local development
    docs_config: Dict[str, Any] = {
        "docs_url": "/docs" if settings.INCLUDE_DOCS else None,
        "redoc_url": "/redoc" if settings.INCLUDE_DOCS else None,
        "openapi_url": "/openapi.json" if settings.INCLUDE_DOCS else None,
    }

    app = FastAPI(
        title="TaskPilot",
        description="Routes task questions to a fast lookup path or a tool-using agent",
        version="0.1.0",
        lifespan=lifespan,
        **docs_config,
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request.state.request_id = request_id

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        return response

    @app.get("/health")
    async def health(services: ServiceContainer = Depends(get_services)):
        orchestrator = services.orchestrator
        return {
            "status": "ok",
            "branches": [orchestrator.fast_path.get_info(), orchestrator.agent.get_info()],
            "similarity_index": "enabled" if services.similarity_index is not None else "disabled",
            "credentials_held": services.relay.held_count(),
            "metrics": metrics.get_metrics_summary(),
        }

    app.include_router(agent_router)
    return app
