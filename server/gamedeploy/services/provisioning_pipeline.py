"""Deployment pipeline: clone, configure and provision one game server VM."""
from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from pydantic import ValidationError

from ..core.config import Settings, settings
from ..core.errors import (
    ConfigurationError,
    DeployError,
    DeploymentCancelledError,
    HypervisorError,
    PersistenceError,
)
from ..core.models import HypervisorConfig, Job, LogLevel
from ..core.pydantic_models import DeploymentRequest, DeploymentResult, load_request_payload
from ..core.secret_generator import (
    ADMIN_PASSWORD_LENGTH,
    RCON_PASSWORD_LENGTH,
    generate_password,
)
from .ansible_runner import AnsibleRunner
from .deployment_store import DeploymentStore
from .download_resolver import DownloadResolver
from .network_allocator import NetworkAllocator
from .proxmox_client import HypervisorDriver, HypervisorFactory

logger = logging.getLogger(__name__)

DEFAULT_DISK_GB = 50
HEAP_RESERVED_MB = 2048
MIN_HEAP_MB = 1024
BASE_GAME_PORT = 25565
MAX_PORT = 65535
DEFAULT_RCON_PORT = 25575
DEFAULT_BACKUP_FREQUENCY = "24h"
DEFAULT_BACKUP_RETENTION = 2
DEFAULT_ADMIN_USER = "mcadmin"

FAILURE_POLICY_MARK_FAILED = "mark_failed"
FAILURE_POLICY_LEAVE_RUNNING = "leave_running"


def default_game_port(deployment_id: int) -> int:
    """Port derived from the deployment id, wrapped to stay within range."""
    port = BASE_GAME_PORT + deployment_id
    if port > MAX_PORT:
        port = BASE_GAME_PORT + (deployment_id % 1000)
    return port


def default_jvm_heap(memory_mb: int) -> str:
    return f"{max(memory_mb - HEAP_RESERVED_MB, MIN_HEAP_MB)}M"


class ProvisioningPipeline:
    """Run every step of a Minecraft deployment for a claimed job.

    Each milestone is written both to the process log and to the
    deployment's audit trail. Steps are never retried here; the first error
    unwinds to the caller after the failure policy has been applied.
    """

    def __init__(
        self,
        store: DeploymentStore,
        hypervisor_factory: HypervisorFactory,
        ansible: AnsibleRunner,
        resolver: DownloadResolver,
        allocator: NetworkAllocator,
        app_settings: Settings = settings,
        password_generator: Callable[[int], str] = generate_password,
    ):
        self._store = store
        self._hypervisor_factory = hypervisor_factory
        self._ansible = ansible
        self._resolver = resolver
        self._allocator = allocator
        self._settings = app_settings
        self._generate_password = password_generator

    # ------------------------------------------------------------------
    # Audit helpers
    # ------------------------------------------------------------------

    def _info(self, deployment_id: int, message: str) -> None:
        logger.info("Deployment %s: %s", deployment_id, message)
        self._store.append_log(deployment_id, LogLevel.INFO, message)

    def _error(self, deployment_id: int, message: str) -> None:
        logger.error("Deployment %s: %s", deployment_id, message)
        self._store.append_log(deployment_id, LogLevel.ERROR, message)

    @contextmanager
    def _step(self, deployment_id: int, failure_label: str) -> Iterator[None]:
        """Record a failing step in the audit trail before re-raising."""
        try:
            yield
        except DeploymentCancelledError:
            raise
        except DeployError as exc:
            self._error(deployment_id, f"{failure_label}: {exc.message}")
            raise

    def _ensure_not_cancelled(
        self, deployment_id: int, cancel_event: Optional[asyncio.Event]
    ) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise DeploymentCancelledError(f"deployment {deployment_id} was cancelled")

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        job: Job,
        hypervisor_config: HypervisorConfig,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> DeploymentResult:
        deployment_id = job.deployment_id
        if deployment_id is None:
            raise PersistenceError(f"job {job.id} has no deployment_id")

        try:
            request = load_request_payload(job.payload_json)
        except (ValueError, ValidationError) as exc:
            message = f"job {job.id} payload is unreadable: {exc}"
            self._store.mark_failed(deployment_id, message)
            raise PersistenceError(message) from exc

        if not self._store.mark_running(deployment_id):
            raise DeploymentCancelledError(
                f"deployment {deployment_id} is no longer pending"
            )
        self._info(deployment_id, "Starting deployment pipeline")

        try:
            return await self._execute(job, deployment_id, request, hypervisor_config, cancel_event)
        except DeploymentCancelledError:
            self._info(deployment_id, "Deployment cancelled, pipeline stopped")
            raise
        except Exception as exc:
            self._apply_failure_policy(deployment_id, exc)
            raise

    def _apply_failure_policy(self, deployment_id: int, exc: Exception) -> None:
        message = exc.message if isinstance(exc, DeployError) else str(exc)
        if (
            self._settings.pipeline_failure_policy == FAILURE_POLICY_LEAVE_RUNNING
            and self._has_checkpoint(deployment_id)
        ):
            logger.warning(
                "Deployment %s failed (%s); left running for manual recovery",
                deployment_id,
                message,
            )
            return
        try:
            self._store.mark_failed(deployment_id, message)
        except PersistenceError:
            logger.exception("Could not mark deployment %s as failed", deployment_id)

    def _has_checkpoint(self, deployment_id: int) -> bool:
        """Only a deployment whose VM exists has anything to recover by hand."""
        try:
            deployment = self._store.get_deployment(deployment_id)
        except PersistenceError:
            return False
        return deployment is not None and deployment.vmid is not None

    # ------------------------------------------------------------------
    # Defaults
    # ------------------------------------------------------------------

    def resolve_defaults(
        self,
        request: DeploymentRequest,
        hypervisor_config: HypervisorConfig,
        deployment_id: int,
    ) -> DeploymentRequest:
        """Return a copy of ``request`` with every unset field filled in."""
        resolved = request.model_copy(deep=True)

        resolved.node = resolved.node or hypervisor_config.default_node or None
        resolved.storage = resolved.storage or hypervisor_config.default_storage or None
        resolved.bridge = resolved.bridge or hypervisor_config.default_bridge
        resolved.template_vmid = resolved.template_vmid or hypervisor_config.template_vmid or None

        if not resolved.ip_address:
            allocation = self._allocator.allocate(deployment_id)
            resolved.ip_address = allocation.ip_address
            resolved.cidr = allocation.prefix_length
            resolved.gateway = allocation.gateway
            resolved.dns = allocation.dns
            resolved.hostname = resolved.hostname or allocation.hostname

        if resolved.disk_gb is None or resolved.disk_gb <= 0:
            resolved.disk_gb = DEFAULT_DISK_GB

        minecraft = resolved.minecraft
        if not minecraft.jvm_heap:
            minecraft.jvm_heap = default_jvm_heap(resolved.memory_mb)
        if minecraft.port is None:
            minecraft.port = default_game_port(deployment_id)

        if minecraft.backup_enabled is None:
            minecraft.backup_enabled = True
        if minecraft.backup_enabled:
            minecraft.backup_frequency = minecraft.backup_frequency or DEFAULT_BACKUP_FREQUENCY
            minecraft.backup_retention = minecraft.backup_retention or DEFAULT_BACKUP_RETENTION

        if minecraft.rcon_enabled is None:
            minecraft.rcon_enabled = True
        if minecraft.rcon_enabled:
            minecraft.rcon_port = minecraft.rcon_port or DEFAULT_RCON_PORT
            if not (minecraft.rcon_password or "").strip():
                minecraft.rcon_password = self._generate_password(RCON_PASSWORD_LENGTH)

        minecraft.admin_user = minecraft.admin_user or DEFAULT_ADMIN_USER
        if not minecraft.admin_password:
            minecraft.admin_password = self._generate_password(ADMIN_PASSWORD_LENGTH)

        return resolved

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _execute(
        self,
        job: Job,
        deployment_id: int,
        request: DeploymentRequest,
        hypervisor_config: HypervisorConfig,
        cancel_event: Optional[asyncio.Event],
    ) -> DeploymentResult:
        with self._step(deployment_id, "Could not resolve deployment defaults"):
            request = self.resolve_defaults(request, hypervisor_config, deployment_id)
        ip = request.ip_address
        ip_cidr = f"{ip}/{request.cidr}"
        vmid: Optional[int] = None

        if self._settings.dry_run:
            self._info(
                deployment_id,
                "DRY_RUN is enabled, simulating steps without touching Proxmox or the VM",
            )
            self._ensure_not_cancelled(deployment_id, cancel_event)
            self._info(deployment_id, "Running Ansible playbook to provision Minecraft server")
            self._info(deployment_id, "DRY_RUN enabled: skipping actual ansible-playbook invocation")
        else:
            if not request.node or not request.template_vmid:
                message = "Proxmox node and template VMID must be configured"
                self._error(deployment_id, message)
                raise ConfigurationError(message)
            allowed = hypervisor_config.allowed_nodes
            if allowed and request.node not in allowed:
                message = (
                    f"Proxmox node {request.node} is not one of the allowed nodes: "
                    f"{', '.join(allowed)}"
                )
                self._error(deployment_id, message)
                raise ConfigurationError(message)

            driver = self._hypervisor_factory(hypervisor_config)
            try:
                vmid = await self._provision_vm(
                    driver, deployment_id, request, ip_cidr, cancel_event
                )
            finally:
                await driver.aclose()

            self._ensure_not_cancelled(deployment_id, cancel_event)
            self._info(deployment_id, "Running Ansible playbook to provision Minecraft server")
            with self._step(deployment_id, "Ansible provisioning failed"):
                extra_vars = await self._resolver.resolve(request.minecraft)
                await self._ansible.run(
                    request.minecraft, ip, hypervisor_config.ssh_user, extra_vars
                )

        self._ensure_not_cancelled(deployment_id, cancel_event)
        result = self._build_result(job, request, vmid)
        self._store.mark_success(deployment_id, result, vmid, ip)
        self._info(deployment_id, "Deployment completed successfully")
        return result

    async def _provision_vm(
        self,
        driver: HypervisorDriver,
        deployment_id: int,
        request: DeploymentRequest,
        ip_cidr: str,
        cancel_event: Optional[asyncio.Event],
    ) -> int:
        config = self._settings
        node = request.node

        self._ensure_not_cancelled(deployment_id, cancel_event)
        self._info(deployment_id, "Requesting next VMID from Proxmox")
        with self._step(deployment_id, "Failed to get next VMID"):
            vmid = await driver.allocate_next_id()

        self._ensure_not_cancelled(deployment_id, cancel_event)
        self._info(
            deployment_id,
            f"Cloning VM from template {request.template_vmid} to new VMID {vmid}",
        )
        with self._step(deployment_id, "Clone failed"):
            task = await driver.clone(
                node, request.template_vmid, vmid, request.name, request.storage
            )
            self._info(deployment_id, f"Waiting for clone task {task}")
            await driver.wait_for_task(node, task, config.clone_timeout_seconds)

        # The VM exists from here on: persist its identity before anything else
        # can fail so that teardown can always find it.
        self._store.record_checkpoint(deployment_id, vmid, request.ip_address)

        self._ensure_not_cancelled(deployment_id, cancel_event)
        self._info(deployment_id, "Configuring VM resources and cloud-init networking")
        with self._step(deployment_id, "Configure VM failed"):
            await driver.configure(
                node,
                vmid,
                request.cores,
                request.memory_mb,
                request.bridge,
                vlan=request.vlan,
                ip_cidr=ip_cidr,
                gateway=request.gateway,
                tags=config.vm_tag,
            )

        self._ensure_not_cancelled(deployment_id, cancel_event)
        await self._resize_disk(driver, deployment_id, node, vmid, request.disk_gb)

        self._ensure_not_cancelled(deployment_id, cancel_event)
        self._info(deployment_id, "Starting VM")
        with self._step(deployment_id, "Start VM failed"):
            task = await driver.start(node, vmid)
            await driver.wait_for_task(node, task, config.start_timeout_seconds)

        self._ensure_not_cancelled(deployment_id, cancel_event)
        self._info(deployment_id, "Waiting for SSH to become available on VM")
        with self._step(deployment_id, "SSH did not become available"):
            await driver.wait_for_tcp(
                request.ip_address, config.management_port, config.reachability_timeout_seconds
            )
        return vmid

    async def _resize_disk(
        self,
        driver: HypervisorDriver,
        deployment_id: int,
        node: str,
        vmid: int,
        requested_gb: int,
    ) -> None:
        try:
            current_gb = await driver.get_primary_disk_size_gb(node, vmid)
        except HypervisorError as exc:
            self._info(
                deployment_id,
                f"Could not read current disk size: {exc.message}, skipping resize",
            )
            return

        if requested_gb <= current_gb:
            self._info(
                deployment_id,
                f"Disk already {current_gb}G (template), requested {requested_gb}G, "
                "no resize (shrinking is not supported)",
            )
            return

        self._info(deployment_id, f"Resizing VM disk from {current_gb}G to {requested_gb}G")
        with self._step(deployment_id, "Resize disk failed"):
            task = await driver.resize_primary_disk(node, vmid, requested_gb)
            if task:
                await driver.wait_for_task(node, task, self._settings.resize_timeout_seconds)

    def _build_result(
        self, job: Job, request: DeploymentRequest, vmid: Optional[int]
    ) -> DeploymentResult:
        minecraft = request.minecraft
        admin_user = minecraft.admin_user
        if admin_user:
            mc_dir = f"/home/{admin_user}/minecraft"
            mc_user = admin_user
        else:
            mc_dir = "/opt/minecraft"
            mc_user = "minecraft"

        return DeploymentResult(
            vmid=vmid or 0,
            ip=request.ip_address,
            hostname=request.hostname,
            job=job.id,
            run=str(uuid.uuid4()),
            port=minecraft.port,
            mc_dir=mc_dir,
            mc_user=mc_user,
            sftp_user=admin_user,
            sftp_password=minecraft.admin_password,
            rcon_host=request.ip_address if minecraft.rcon_enabled else None,
            rcon_port=minecraft.rcon_port if minecraft.rcon_enabled else None,
            rcon_password=minecraft.rcon_password if minecraft.rcon_enabled else None,
            dry_run=self._settings.dry_run,
        )
