"""
Challenge Deployer - Deployment API Endpoints

- POST /deployments - Deploy a challenge for a requester
- DELETE /deployments - Tear a deployment down
- GET /deployments/{requester_id}/{challenge_id} - Deployment status
"""

from typing import Annotated, Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Path, Request, Response, status
from pydantic import BaseModel, ConfigDict, Field

from app.domain.deployments.entities import DeploymentRequest, DeploymentState
from app.domain.deployments.naming import MAX_IDENTIFIER_LENGTH, deployment_key
from app.infrastructure.orchestrator.services.deployment_manager import DeploymentOrchestrator

logger = structlog.get_logger(__name__)
router = APIRouter()

IDENTIFIER_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.-]*$"


# ============================================================================
# Request/Response Models
# ============================================================================

class DeploymentBody(BaseModel):
    """Identifies one deployment: a challenge for a requester."""
    model_config = ConfigDict(populate_by_name=True)

    requester_id: str = Field(
        ...,
        alias="requesterId",
        min_length=1,
        max_length=MAX_IDENTIFIER_LENGTH,
        pattern=IDENTIFIER_PATTERN,
        description="Team or user requesting the instance",
    )
    challenge_id: str = Field(
        ...,
        alias="challengeId",
        min_length=1,
        max_length=MAX_IDENTIFIER_LENGTH,
        pattern=IDENTIFIER_PATTERN,
        description="Challenge to deploy",
    )


class DeployResponse(BaseModel):
    """Result of a deploy request."""
    url: Optional[str] = None
    state: str


# ============================================================================
# Dependencies
# ============================================================================

async def get_orchestrator(request: Request) -> DeploymentOrchestrator:
    """Get deployment orchestrator from app state."""
    return request.app.state.orchestrator


Orchestrator = Annotated[DeploymentOrchestrator, Depends(get_orchestrator)]


# ============================================================================
# API Endpoints
# ============================================================================

@router.post(
    "",
    response_model=DeployResponse,
    summary="Deploy Challenge",
    description="Provision (or return the existing) challenge instance for a requester",
)
async def deploy(body: DeploymentBody, orchestrator: Orchestrator) -> DeployResponse:
    record = await orchestrator.deploy(
        DeploymentRequest(requester_id=body.requester_id, challenge_id=body.challenge_id)
    )
    return DeployResponse(url=record.url, state=record.state.value)


@router.delete(
    "",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Tear Down Deployment",
    description="Delete the challenge instance; succeeds when none exists",
)
async def teardown(body: DeploymentBody, orchestrator: Orchestrator) -> Response:
    await orchestrator.teardown(body.requester_id, body.challenge_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/{requester_id}/{challenge_id}",
    summary="Deployment Status",
    description="Current deployment record, or state Absent",
)
async def deployment_status(
    orchestrator: Orchestrator,
    requester_id: Annotated[
        str, Path(min_length=1, max_length=MAX_IDENTIFIER_LENGTH, pattern=IDENTIFIER_PATTERN)
    ],
    challenge_id: Annotated[
        str, Path(min_length=1, max_length=MAX_IDENTIFIER_LENGTH, pattern=IDENTIFIER_PATTERN)
    ],
) -> Dict[str, Any]:
    record = await orchestrator.status(requester_id, challenge_id)
    if record is None:
        return {
            "key": deployment_key(requester_id, challenge_id),
            "requesterId": requester_id,
            "challengeId": challenge_id,
            "state": DeploymentState.ABSENT.value,
            "url": None,
        }
    return record.to_dict()
