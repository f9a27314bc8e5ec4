"""Single-consumer worker draining the deployment job queue."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from ..core.config import Settings, settings
from ..core.errors import (
    ConfigurationError,
    DeployError,
    DeploymentCancelledError,
    PersistenceError,
)
from ..core.models import HypervisorConfig, Job, JobStatus
from .deployment_store import DeploymentStore
from .hypervisor_settings import resolve_hypervisor_config
from .provisioning_pipeline import ProvisioningPipeline

logger = logging.getLogger(__name__)


@dataclass
class _InFlightJob:
    job: Job
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    finished: asyncio.Event = field(default_factory=asyncio.Event)


class JobWorker:
    """Poll the store for due jobs and run them one at a time."""

    def __init__(
        self,
        store: DeploymentStore,
        pipeline: ProvisioningPipeline,
        poll_interval: Optional[float] = None,
        app_settings: Settings = settings,
    ):
        self._store = store
        self._pipeline = pipeline
        self._settings = app_settings
        self._poll_interval = (
            poll_interval if poll_interval is not None else app_settings.worker_poll_interval_seconds
        )
        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._current: Optional[_InFlightJob] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the polling loop."""

        if self.is_running:
            return

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Job worker started (poll interval %.1fs)", self._poll_interval)

    async def stop(self) -> None:
        """Signal the loop to stop and wait for the current iteration to end."""

        if self._task is None:
            return

        assert self._stop_event is not None
        self._stop_event.set()
        try:
            await self._task
        except Exception:  # pragma: no cover - defensive logging
            logger.exception("Job worker terminated with exception")
        self._task = None
        logger.info("Job worker stopped")

    async def _run_loop(self) -> None:
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except PersistenceError as exc:
                logger.error("Worker iteration abandoned: %s", exc)
            except Exception:
                logger.exception("Unhandled exception in job worker loop")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass

    async def run_once(self) -> Optional[Job]:
        """Claim and execute at most one due job; return it, or None when idle."""
        job = self._store.claim_next_job()
        if job is None:
            return None

        logger.info("Claimed job %s for deployment %s (attempt %s)", job.id, job.deployment_id, job.attempts)
        await self._process(job)
        return job

    def _load_hypervisor_config(self) -> HypervisorConfig:
        try:
            return resolve_hypervisor_config(self._store, self._settings)
        except ConfigurationError:
            if not self._settings.dry_run:
                raise
            logger.info("No Proxmox configuration; using placeholder for dry run")
            return HypervisorConfig(api_url="", api_token_id="", api_token_secret="")

    async def _process(self, job: Job) -> None:
        in_flight = _InFlightJob(job)
        self._current = in_flight
        status = JobStatus.DONE
        error: Optional[str] = None

        try:
            try:
                hypervisor_config = self._load_hypervisor_config()
            except DeployError as exc:
                # The pipeline never ran, so the deployment is still queued.
                if job.deployment_id is not None:
                    self._store.mark_failed(job.deployment_id, exc.message)
                raise

            await self._pipeline.run(job, hypervisor_config, in_flight.cancel_event)
        except DeploymentCancelledError as exc:
            status = JobStatus.CANCELLED
            error = exc.message
            if job.deployment_id is not None:
                self._store.mark_cancelled(job.deployment_id, exc.message)
        except DeployError as exc:
            status = JobStatus.FAILED
            error = exc.message
        except Exception as exc:
            logger.exception("Unexpected error while running job %s", job.id)
            status = JobStatus.FAILED
            error = str(exc) or exc.__class__.__name__
        finally:
            self._current = None
            in_flight.finished.set()

        if not self._store.finalize_job(job.id, status, error):
            logger.info("Job %s was already finalised elsewhere; kept its status", job.id)
        elif status == JobStatus.DONE:
            logger.info("Job %s completed", job.id)
        else:
            logger.warning("Job %s finished as %s: %s", job.id, status.value, error)

    async def cancel_running(self, deployment_id: int, timeout: float = 30.0) -> bool:
        """Ask the in-flight pipeline of ``deployment_id`` to stop and wait for it.

        Returns True once no pipeline for that deployment is in flight, and
        False when it is still running after ``timeout`` seconds.
        """
        in_flight = self._current
        if in_flight is None or in_flight.job.deployment_id != deployment_id:
            return True

        logger.info("Cancelling in-flight job %s for deployment %s", in_flight.job.id, deployment_id)
        in_flight.cancel_event.set()
        try:
            await asyncio.wait_for(in_flight.finished.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Pipeline for deployment %s did not stop within %.1fs", deployment_id, timeout
            )
            return False
        return True
