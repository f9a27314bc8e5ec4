"""Main application entry point."""
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from .api.routes import router
from .core.config import settings
from .core.config_validation import run_config_checks
from .core.database import Database
from .core.errors import ConfigurationError
from .core.models import HypervisorConfig
from .services.ansible_runner import AnsibleRunner
from .services.deployment_service import DeploymentService
from .services.deployment_store import DeploymentStore
from .services.download_resolver import MinecraftDownloadResolver
from .services.job_worker import JobWorker
from .services.network_allocator import NetworkAllocator
from .services.process_invoker import AsyncioProcessInvoker
from .services.provisioning_pipeline import ProvisioningPipeline
from .services.proxmox_client import ProxmoxClient
from .services.ssh_keys import ensure_key_pair
from .services.teardown_service import TeardownService

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


def _proxmox_factory(config: HypervisorConfig) -> ProxmoxClient:
    return ProxmoxClient.from_config(config, settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""

    logger.info("Starting %s", settings.app_name)
    logger.info(f"Debug mode: {settings.debug}")
    logger.info(f"Dry run: {settings.dry_run}")

    config_result = run_config_checks()

    if config_result.has_errors:
        for issue in config_result.errors:
            logger.error("Configuration error: %s", issue.message)
            if issue.hint:
                logger.error("Hint: %s", issue.hint)

    if config_result.has_warnings:
        for issue in config_result.warnings:
            logger.warning("Configuration warning: %s", issue.message)
            if issue.hint:
                logger.warning("Hint: %s", issue.hint)

    db = Database(settings.database_path)
    db.migrate()
    store = DeploymentStore(db)

    invoker = AsyncioProcessInvoker()
    if not settings.dry_run:
        try:
            await ensure_key_pair(invoker, settings.ssh_key_path)
        except ConfigurationError as exc:
            logger.error("SSH key unavailable: %s", exc.message)

    pipeline = ProvisioningPipeline(
        store,
        _proxmox_factory,
        AnsibleRunner.from_settings(invoker, settings),
        MinecraftDownloadResolver.from_settings(settings),
        NetworkAllocator.from_settings(store, settings),
        settings,
    )
    worker = JobWorker(store, pipeline, settings.worker_poll_interval_seconds, settings)
    teardown = TeardownService(store, _proxmox_factory, worker, settings)

    app.state.worker = worker
    app.state.deployment_service = DeploymentService(store, teardown)

    worker_started = False
    if not config_result.has_errors:
        await worker.start()
        worker_started = True
    else:
        logger.error(
            "Skipping job worker startup because configuration errors were detected."
        )

    try:
        yield
    finally:
        logger.info("Shutting down application")
        if worker_started:
            await worker.stop()
        db.close()
        logger.info("Application stopped")


app = FastAPI(
    title=settings.app_name,
    description="Queue-backed provisioning of game server VMs on Proxmox",
    lifespan=lifespan,
)

app.include_router(router)


def main():
    """Run the application."""
    uvicorn.run(
        "gamedeploy.main:app",
        host="0.0.0.0",
        port=8000,
        log_level="debug" if settings.debug else "info",
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
