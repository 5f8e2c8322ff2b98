"""
Challenge Deployer - FastAPI Application Factory
Explicit constructor injection of the repository, cache and cluster client
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from prometheus_client import make_asgi_app

from app.core.config import Settings, get_settings
from app.core.logging import setup_logging
from app.domain.challenges.entities import ChallengeDefinition
from app.infrastructure.cache import TTLCache
from app.infrastructure.orchestrator.services.config_store import ChallengeConfigStore
from app.infrastructure.orchestrator.services.deployment_manager import DeploymentOrchestrator
from app.infrastructure.orchestrator.services.kube_client import KubeClient
from app.infrastructure.repository import RedisChallengeConfigRepository
from app.interfaces.api.v1 import api_router
from app.interfaces.middleware.error_handler import (
    ErrorHandlerMiddleware,
    validation_exception_handler,
)
from app.interfaces.middleware.request_context import RequestContextMiddleware

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup/shutdown."""
    settings: Settings = app.state.settings

    # Setup structured logging
    setup_logging(settings.log_level, settings.log_format)

    logger.info(
        "Starting Challenge Deployer",
        version=settings.app_version,
        namespace=settings.k8s_namespace,
        base_domain=settings.base_domain,
    )

    # Challenge repository and its cache
    repository = RedisChallengeConfigRepository(settings)
    await repository.connect()
    app.state.repository = repository

    cache: TTLCache[ChallengeDefinition] = TTLCache(
        ttl=settings.challenge_config_cache_ttl,
        name="challenge-config",
    )
    config_store = ChallengeConfigStore(repository, cache)

    # Kubernetes client
    cluster = KubeClient.from_settings(settings)
    app.state.cluster = cluster

    # Orchestrator (reconciles with the cluster before serving)
    orchestrator = DeploymentOrchestrator(config_store, cluster, settings)
    await orchestrator.start()
    app.state.orchestrator = orchestrator

    logger.info("All services initialized successfully")

    yield

    # Cleanup
    logger.info("Shutting down Challenge Deployer")

    await orchestrator.stop()
    await repository.disconnect()
    logger.info("Shutdown complete")


def create_app(settings: Settings | None = None) -> FastAPI:
    """
    Application factory pattern for FastAPI.

    Args:
        settings: Optional settings override for testing

    Returns:
        Configured FastAPI application instance
    """
    if settings is None:
        settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Per-requester challenge instances on Kubernetes",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    # Store settings in app state
    app.state.settings = settings

    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    # Add middleware (order matters - last added is first executed)

    # Error handler
    app.add_middleware(ErrorHandlerMiddleware, settings=settings)

    # Request IDs (wraps the error handler, so error responses carry them too)
    app.add_middleware(RequestContextMiddleware)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    # Mount Prometheus metrics
    metrics_app = make_asgi_app()
    app.mount("/metrics", metrics_app)

    app.include_router(api_router)

    return app


# Create default application instance
app = create_app()
