"""
Challenge Deployer - Health Check Endpoints
Repository and cluster connectivity
"""

import time
from datetime import datetime, timezone
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Request, Response, status
from pydantic import BaseModel

logger = structlog.get_logger(__name__)

router = APIRouter()


class HealthStatus(BaseModel):
    """Health check response model."""
    status: str
    timestamp: str
    version: str
    checks: Dict[str, Any]


@router.get(
    "",
    response_model=HealthStatus,
    summary="Health Check",
    description="Health of the challenge repository and the Kubernetes API",
)
async def health_check(request: Request, response: Response) -> HealthStatus:
    """
    Perform health check.

    Checks:
    - Challenge repository connectivity
    - Kubernetes API reachability in the deployment namespace
    """
    settings = request.app.state.settings
    checks: Dict[str, Any] = {}
    overall_status = "healthy"

    components = {
        "repository": getattr(request.app.state, "repository", None),
        "cluster": getattr(request.app.state, "cluster", None),
    }
    for name, component in components.items():
        if component is None:
            checks[name] = {"status": "unknown"}
            continue
        start = time.monotonic()
        result = await component.health_check()
        checks[name] = {
            **result,
            "latency_ms": round((time.monotonic() - start) * 1000, 2),
        }
        if result.get("status") != "healthy":
            overall_status = "unhealthy"

    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is not None:
        checks["deployments"] = {"live": len(orchestrator.records())}

    if overall_status != "healthy":
        logger.warning("Health check degraded", checks=checks)
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthStatus(
        status=overall_status,
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=settings.app_version,
        checks=checks,
    )
