"""Data models for the application."""
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime
from enum import Enum


class DeploymentStatus(str, Enum):
    """Deployment lifecycle status."""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobStatus(str, Enum):
    """Job execution status."""
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class LogLevel(str, Enum):
    """Severity of a deployment log line."""
    INFO = "info"
    ERROR = "error"


class PowerState(str, Enum):
    """Virtual machine power state as reported by the hypervisor."""
    RUNNING = "running"
    STOPPED = "stopped"
    PAUSED = "paused"
    UNKNOWN = "unknown"


# Job type for the only kind of work the queue carries today.
JOB_TYPE_DEPLOY = "deploy_minecraft"

GAME_MINECRAFT = "minecraft"
DEPLOYMENT_TYPE_MINECRAFT_JAVA = "minecraft_java"


class Deployment(BaseModel):
    """One provisioning request and its lifecycle."""
    id: int
    game: str
    type: str
    request_json: str
    result_json: Optional[str] = None
    vmid: Optional[int] = None
    ip_address: Optional[str] = None
    status: DeploymentStatus
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class DeploymentSummary(BaseModel):
    """Shallow deployment representation for list views."""
    id: int
    game: str
    type: str
    status: DeploymentStatus
    vmid: Optional[int] = None
    ip_address: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class Job(BaseModel):
    """One unit of queued work."""
    id: int
    type: str
    payload_json: str
    status: JobStatus
    deployment_id: Optional[int] = None
    run_after: datetime
    last_error: Optional[str] = None
    attempts: int = 0
    created_at: datetime
    updated_at: datetime


class DeploymentLogEntry(BaseModel):
    """Append-only audit line attached to a deployment."""
    id: int
    deployment_id: int
    ts: datetime
    level: LogLevel
    message: str


class HypervisorConfig(BaseModel):
    """Connection and default placement settings for the Proxmox cluster."""
    api_url: str
    api_token_id: str
    api_token_secret: str
    default_node: str = ""
    default_storage: str = ""
    default_bridge: str = "vmbr0"
    template_vmid: int = 0
    ssh_user: Optional[str] = None
    allowed_nodes: List[str] = Field(default_factory=list)
    created_at: Optional[str] = None


class NetworkAllocation(BaseModel):
    """Address handed out by the network allocator."""
    ip_address: str
    prefix_length: int
    gateway: str
    dns: Optional[str] = None
    hostname: str

    @property
    def ip_cidr(self) -> str:
        return f"{self.ip_address}/{self.prefix_length}"


class VMRuntimeStatus(BaseModel):
    """Live resource usage of a VM."""
    cpu_fraction: float = 0.0
    mem_used: int = 0
    mem_total: int = 0
    disk_used: int = 0
    disk_total: int = 0
    power_state: PowerState = PowerState.UNKNOWN


class EnqueueResponse(BaseModel):
    """Response returned when a deployment is accepted."""
    deployment_id: int


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: datetime
    worker_running: bool = False
    details: Dict[str, Any] = Field(default_factory=dict)
