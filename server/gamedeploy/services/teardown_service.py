"""Cancellation of deployments and destruction of their VMs."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from pydantic import ValidationError

from ..core.config import Settings, settings
from ..core.errors import DeployError
from ..core.models import Deployment, LogLevel
from ..core.pydantic_models import load_request_payload
from .deployment_store import DeploymentStore
from .hypervisor_settings import resolve_hypervisor_config
from .proxmox_client import HypervisorFactory

if TYPE_CHECKING:  # pragma: no cover - only for type hints
    from .job_worker import JobWorker

logger = logging.getLogger(__name__)

TEARDOWN_FAILED_MESSAGE = (
    "Failed to delete the VM on Proxmox. Check Proxmox before retrying."
)
PIPELINE_STILL_RUNNING_MESSAGE = (
    "Provisioning has not stopped yet; retry the cancellation once it does."
)


@dataclass(slots=True)
class TeardownOutcome:
    """What a cancellation achieved."""

    deployment_id: int
    vmid: Optional[int]
    vm_deleted: bool
    record_deleted: bool
    cancelled_jobs: int
    error: Optional[str] = None
    pipeline_stopped: bool = True


class TeardownService:
    """Stop and delete a deployment's VM, then reconcile its records.

    Jobs still queued or running are always cancelled. The deployment row is
    removed only when the VM never existed or its deletion was confirmed;
    otherwise it is kept as failed with a diagnostic for the operator. A
    pipeline that does not stop in time leaves the row untouched.
    """

    def __init__(
        self,
        store: DeploymentStore,
        hypervisor_factory: HypervisorFactory,
        worker: Optional["JobWorker"] = None,
        app_settings: Settings = settings,
        cancel_wait_seconds: float = 60.0,
    ):
        self._store = store
        self._hypervisor_factory = hypervisor_factory
        self._worker = worker
        self._settings = app_settings
        self._cancel_wait_seconds = cancel_wait_seconds

    async def cancel_deployment(self, deployment_id: int) -> TeardownOutcome:
        self._store.require_deployment(deployment_id)

        stopped = True
        if self._worker is not None:
            stopped = await self._worker.cancel_running(
                deployment_id, timeout=self._cancel_wait_seconds
            )

        cancelled_jobs = self._store.cancel_open_jobs(deployment_id)

        if not stopped:
            # The pipeline may still be inside a clone whose VMID is not
            # recorded yet, so the row must survive until it unwinds.
            deployment = self._store.get_deployment(deployment_id)
            vmid = deployment.vmid if deployment is not None else None
            self._store.append_log(
                deployment_id, LogLevel.INFO, PIPELINE_STILL_RUNNING_MESSAGE
            )
            logger.warning(
                "Teardown of deployment %s deferred: pipeline still running", deployment_id
            )
            return TeardownOutcome(
                deployment_id,
                vmid,
                False,
                False,
                cancelled_jobs,
                PIPELINE_STILL_RUNNING_MESSAGE,
                pipeline_stopped=False,
            )

        # Re-read: a pipeline that just unwound may have checkpointed a VMID.
        deployment = self._store.get_deployment(deployment_id)
        if deployment is None:
            return TeardownOutcome(deployment_id, None, True, True, cancelled_jobs)

        error = None
        if deployment.vmid:
            error = await self._destroy_vm(deployment)

        if error is not None:
            self._store.append_log(deployment_id, LogLevel.ERROR, f"VM teardown failed: {error}")
            self._store.mark_teardown_failed(deployment_id, TEARDOWN_FAILED_MESSAGE)
            logger.error(
                "Teardown of deployment %s (VM %s) failed: %s",
                deployment_id,
                deployment.vmid,
                error,
            )
            return TeardownOutcome(
                deployment_id, deployment.vmid, False, False, cancelled_jobs, error
            )

        self._store.delete_deployment(deployment_id)
        logger.info(
            "Deployment %s removed (VM %s, %d job(s) cancelled)",
            deployment_id,
            deployment.vmid,
            cancelled_jobs,
        )
        return TeardownOutcome(deployment_id, deployment.vmid, True, True, cancelled_jobs)

    async def _destroy_vm(self, deployment: Deployment) -> Optional[str]:
        """Stop then delete the VM; return an error message unless deletion is confirmed."""
        vmid = deployment.vmid
        try:
            config = resolve_hypervisor_config(self._store, self._settings)
            request = load_request_payload(deployment.request_json)
        except (DeployError, ValueError, ValidationError) as exc:
            return f"cannot reach hypervisor for VM {vmid}: {exc}"

        node = request.node or config.default_node
        if not node:
            return f"no Proxmox node known for VM {vmid}"

        driver = self._hypervisor_factory(config)
        try:
            try:
                task = await driver.stop(node, vmid)
                await driver.wait_for_task(node, task, self._settings.stop_timeout_seconds)
            except DeployError as exc:
                # A VM that cannot be stopped may still be deletable.
                logger.warning("Stopping VM %s on %s failed: %s", vmid, node, exc)

            try:
                task = await driver.delete(node, vmid)
                await driver.wait_for_task(node, task, self._settings.delete_timeout_seconds)
            except DeployError as exc:
                return f"deleting VM {vmid} on {node} failed: {exc}"
        finally:
            await driver.aclose()
        return None
