"""Submission and query path used by the HTTP layer."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..core.models import Deployment, DeploymentLogEntry, DeploymentSummary
from ..core.pydantic_models import DeploymentRequest
from ..core.validation import parse_deployment_request, validate_deployment_request
from .deployment_store import DeploymentStore
from .teardown_service import TeardownOutcome, TeardownService

logger = logging.getLogger(__name__)


class DeploymentService:
    """Validate and enqueue deployments, and expose their state."""

    def __init__(self, store: DeploymentStore, teardown: TeardownService):
        self._store = store
        self._teardown = teardown

    def validate(self, payload: Dict[str, Any]) -> DeploymentRequest:
        request = parse_deployment_request(payload)
        validate_deployment_request(request)
        return request

    def submit(self, payload: Dict[str, Any]) -> int:
        """Validate ``payload`` and enqueue it; nothing is stored when it is invalid."""
        request = self.validate(payload)
        return self._store.enqueue_deployment(request)

    def get(self, deployment_id: int) -> Deployment:
        return self._store.require_deployment(deployment_id)

    def list(self, limit: int = 100) -> List[DeploymentSummary]:
        return self._store.list_deployments(limit)

    def logs(self, deployment_id: int, after_id: Optional[int] = None) -> List[DeploymentLogEntry]:
        self._store.require_deployment(deployment_id)
        return self._store.list_logs(deployment_id, after_id)

    async def cancel(self, deployment_id: int) -> TeardownOutcome:
        logger.info("Cancellation requested for deployment %s", deployment_id)
        return await self._teardown.cancel_deployment(deployment_id)
