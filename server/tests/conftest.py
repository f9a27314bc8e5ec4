"""Test configuration for server test suite."""

from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional

import pytest

from gamedeploy.core.config import Settings
from gamedeploy.core.database import Database
from gamedeploy.core.errors import HypervisorError
from gamedeploy.core.models import HypervisorConfig, VMRuntimeStatus
from gamedeploy.core.pydantic_models import DeploymentRequest, MinecraftConfig
from gamedeploy.services.ansible_runner import AnsibleRunner
from gamedeploy.services.deployment_store import DeploymentStore
from gamedeploy.services.network_allocator import NetworkAllocator
from gamedeploy.services.process_invoker import ProcessResult
from gamedeploy.services.provisioning_pipeline import ProvisioningPipeline


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeHypervisor:
    """In-memory hypervisor driver that records every call."""

    def __init__(self, next_id: int = 150, disk_size_gb: int = 10):
        self.next_id = next_id
        self.disk_size_gb = disk_size_gb
        self.disk_size_error = False
        self.fail_on: set = set()
        self.after_call: Optional[Callable[[str], None]] = None
        self.calls: List[tuple] = []
        self.closed = False

    @property
    def call_names(self) -> List[str]:
        return [name for name, _ in self.calls]

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if name in self.fail_on:
            raise HypervisorError(f"{name} exploded")
        if self.after_call is not None:
            self.after_call(name)

    async def allocate_next_id(self) -> int:
        self._record("allocate_next_id")
        return self.next_id

    async def clone(self, node, template_id, new_id, name, storage=None) -> str:
        self._record("clone", node, template_id, new_id, name, storage)
        return f"UPID:{node}:clone:{new_id}"

    async def configure(
        self, node, vmid, cores, memory_mb, bridge, vlan=None, ip_cidr=None, gateway=None, tags=None
    ) -> None:
        self._record("configure", node, vmid, cores, memory_mb, bridge, vlan, ip_cidr, gateway, tags)

    async def resize_primary_disk(self, node, vmid, size_gb) -> Optional[str]:
        self._record("resize_primary_disk", node, vmid, size_gb)
        return f"UPID:{node}:resize:{vmid}"

    async def get_primary_disk_size_gb(self, node, vmid) -> int:
        self._record("get_primary_disk_size_gb", node, vmid)
        if self.disk_size_error:
            raise HypervisorError("config unreadable")
        return self.disk_size_gb

    async def start(self, node, vmid) -> str:
        self._record("start", node, vmid)
        return f"UPID:{node}:start:{vmid}"

    async def stop(self, node, vmid) -> str:
        self._record("stop", node, vmid)
        return f"UPID:{node}:stop:{vmid}"

    async def delete(self, node, vmid) -> str:
        self._record("delete", node, vmid)
        return f"UPID:{node}:delete:{vmid}"

    async def wait_for_task(self, node, task_ref, timeout) -> None:
        self._record("wait_for_task", node, task_ref, timeout)

    async def wait_for_tcp(self, host, port, timeout) -> None:
        self._record("wait_for_tcp", host, port, timeout)

    async def get_runtime_status(self, node, vmid) -> VMRuntimeStatus:
        self._record("get_runtime_status", node, vmid)
        return VMRuntimeStatus()

    async def aclose(self) -> None:
        self.closed = True


class FakeInvoker:
    """Process invoker returning a canned result."""

    def __init__(self, result: Optional[ProcessResult] = None):
        self.result = result or ProcessResult(stdout="PLAY RECAP ok=12", stderr="", exit_code=0)
        self.calls: List[SimpleNamespace] = []

    async def run(self, command, args, env=None, stdin=None) -> ProcessResult:
        self.calls.append(
            SimpleNamespace(command=command, args=list(args), env=dict(env or {}), stdin=stdin)
        )
        return self.result


class FakeResolver:
    """Download resolver returning a fixed server jar URL."""

    def __init__(self):
        self.calls: List[MinecraftConfig] = []

    async def resolve(self, minecraft: MinecraftConfig) -> Dict[str, Any]:
        self.calls.append(minecraft)
        return {"mc_server_jar_url": f"https://downloads.example/{minecraft.version}/server.jar"}


@pytest.fixture
def make_invoker():
    return FakeInvoker


@pytest.fixture
def db():
    database = Database(":memory:")
    database.migrate()
    yield database
    database.close()


@pytest.fixture
def store(db):
    return DeploymentStore(db)


@pytest.fixture
def make_settings():
    def factory(**overrides) -> Settings:
        values = {
            "net_cidr": "10.0.0.0/24",
            "net_gateway": "10.0.0.1",
            "dry_run": False,
            "ssh_key_path": "/tmp/gamedeploy-test-key",
            "task_poll_interval_seconds": 0.0,
            "worker_poll_interval_seconds": 0.01,
        }
        values.update(overrides)
        return Settings(**values)

    return factory


@pytest.fixture
def hypervisor_config():
    return HypervisorConfig(
        api_url="https://pve.example:8006",
        api_token_id="deployer@pve!automation",
        api_token_secret="token-secret",
        default_node="pve1",
        default_storage="local-lvm",
        default_bridge="vmbr0",
        template_vmid=9000,
        ssh_user="debian",
    )


@pytest.fixture
def request_payload():
    return {
        "name": "survival1",
        "cores": 2,
        "memory_mb": 8192,
        "disk_gb": 20,
        "minecraft": {"type": "vanilla", "version": "1.20.4", "eula": True},
    }


@pytest.fixture
def deployment_request(request_payload):
    return DeploymentRequest.model_validate(request_payload)


@pytest.fixture
def pipeline_parts(store, make_settings):
    """Build a pipeline wired to fakes; returns a namespace of its collaborators."""

    def factory(**setting_overrides) -> SimpleNamespace:
        app_settings = make_settings(**setting_overrides)
        hypervisor = FakeHypervisor()
        factory_calls: List[HypervisorConfig] = []

        def hypervisor_factory(config: HypervisorConfig) -> FakeHypervisor:
            factory_calls.append(config)
            return hypervisor

        invoker = FakeInvoker()
        resolver = FakeResolver()
        pipeline = ProvisioningPipeline(
            store,
            hypervisor_factory,
            AnsibleRunner.from_settings(invoker, app_settings),
            resolver,
            NetworkAllocator.from_settings(store, app_settings),
            app_settings,
        )
        return SimpleNamespace(
            pipeline=pipeline,
            hypervisor=hypervisor,
            hypervisor_factory=hypervisor_factory,
            factory_calls=factory_calls,
            invoker=invoker,
            resolver=resolver,
            settings=app_settings,
            store=store,
        )

    return factory
