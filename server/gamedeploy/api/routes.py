"""API route handlers."""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request, Response, status

from ..core.config import get_config_validation_result
from ..core.errors import DeployError, DeploymentNotFoundError, RequestValidationError
from ..core.models import (
    Deployment,
    DeploymentLogEntry,
    DeploymentSummary,
    EnqueueResponse,
    HealthResponse,
)
from ..services.deployment_service import DeploymentService

logger = logging.getLogger(__name__)

router = APIRouter()


def get_deployment_service(request: Request) -> DeploymentService:
    service = getattr(request.app.state, "deployment_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Deployment service is not initialised",
        )
    return service


def _raise_http(exc: DeployError) -> None:
    """Translate a deployment error into the matching HTTP response."""
    if isinstance(exc, RequestValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc
    if isinstance(exc, DeploymentNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message) from exc
    logger.error("Request failed with %s error: %s", exc.kind.value, exc.message)
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.message
    ) from exc


@router.get("/healthz", response_model=HealthResponse, tags=["Health"])
async def health_check(request: Request):
    """Health check endpoint."""

    worker = getattr(request.app.state, "worker", None)
    details: Dict[str, Any] = {}
    config_result = get_config_validation_result()
    if config_result is not None:
        details["config_errors"] = len(config_result.errors)
        details["config_warnings"] = len(config_result.warnings)

    return HealthResponse(
        status="config_error" if config_result and config_result.has_errors else "healthy",
        timestamp=datetime.now(timezone.utc),
        worker_running=bool(worker and worker.is_running),
        details=details,
    )


@router.post(
    "/api/v1/deployments/validate",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Deployments"],
)
async def validate_deployment(
    payload: Dict[str, Any] = Body(...),
    service: DeploymentService = Depends(get_deployment_service),
):
    """Validate a deployment request without storing anything."""

    try:
        service.validate(payload)
    except DeployError as exc:
        _raise_http(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/api/v1/deployments",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Deployments"],
)
async def create_deployment(
    payload: Dict[str, Any] = Body(...),
    service: DeploymentService = Depends(get_deployment_service),
):
    """Validate and queue a new game server deployment."""

    try:
        deployment_id = service.submit(payload)
    except DeployError as exc:
        _raise_http(exc)
    return EnqueueResponse(deployment_id=deployment_id)


@router.get(
    "/api/v1/deployments", response_model=List[DeploymentSummary], tags=["Deployments"]
)
async def list_deployments(service: DeploymentService = Depends(get_deployment_service)):
    """Return the most recent deployments, newest first."""

    try:
        return service.list()
    except DeployError as exc:
        _raise_http(exc)


@router.get(
    "/api/v1/deployments/{deployment_id}", response_model=Deployment, tags=["Deployments"]
)
async def get_deployment(
    deployment_id: int, service: DeploymentService = Depends(get_deployment_service)
):
    try:
        return service.get(deployment_id)
    except DeployError as exc:
        _raise_http(exc)


@router.get(
    "/api/v1/deployments/{deployment_id}/logs",
    response_model=List[DeploymentLogEntry],
    tags=["Deployments"],
)
async def get_deployment_logs(
    deployment_id: int,
    after_id: Optional[int] = None,
    service: DeploymentService = Depends(get_deployment_service),
):
    """Return audit log lines, optionally only those after ``after_id``."""

    try:
        return service.logs(deployment_id, after_id)
    except DeployError as exc:
        _raise_http(exc)


@router.delete(
    "/api/v1/deployments/{deployment_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Deployments"],
)
async def delete_deployment(
    deployment_id: int, service: DeploymentService = Depends(get_deployment_service)
):
    """Cancel a deployment and destroy its VM."""

    try:
        outcome = await service.cancel(deployment_id)
    except DeployError as exc:
        _raise_http(exc)

    if not outcome.pipeline_stopped:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=outcome.error)
    if not outcome.vm_deleted:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to delete the VM on Proxmox",
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
