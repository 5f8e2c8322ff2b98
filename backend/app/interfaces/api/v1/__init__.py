"""
Challenge Deployer - API Router
Aggregates all API endpoints
"""

from fastapi import APIRouter

from app.interfaces.api.v1.deployments import router as deployments_router
from app.interfaces.api.v1.health import router as health_router

api_router = APIRouter()

# Health check endpoints
api_router.include_router(
    health_router,
    prefix="/health",
    tags=["Health"],
)

# Deployment lifecycle endpoints
api_router.include_router(
    deployments_router,
    prefix="/deployments",
    tags=["Deployments"],
)
