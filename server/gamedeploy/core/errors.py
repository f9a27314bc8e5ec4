"""Error hierarchy shared by the deployment pipeline, worker and API layer.

Every error carries an ``ErrorKind`` so callers can branch on the category
without matching message text:

- validation: user input rejected before any state is created
- allocation: no free address in the configured pool
- external_service: hypervisor, reachability, Ansible or download failures
- persistence: database failures
- configuration: missing or unusable server configuration
- cancelled: the deployment was cancelled while its pipeline was running
- not_found: the referenced deployment does not exist
"""
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Category of a deployment error."""
    VALIDATION = "validation"
    ALLOCATION = "allocation"
    EXTERNAL_SERVICE = "external_service"
    PERSISTENCE = "persistence"
    CONFIGURATION = "configuration"
    CANCELLED = "cancelled"
    NOT_FOUND = "not_found"


class DeployError(Exception):
    """Base class for all deployment errors."""

    kind: ErrorKind = ErrorKind.EXTERNAL_SERVICE

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class RequestValidationError(DeployError):
    """A deployment request failed structural or semantic validation."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class AddressExhaustedError(DeployError):
    """The address pool has no free host address left."""

    kind = ErrorKind.ALLOCATION


class HypervisorError(DeployError):
    """A hypervisor API call failed."""

    kind = ErrorKind.EXTERNAL_SERVICE

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TaskTimeoutError(HypervisorError):
    """A hypervisor task did not reach a terminal state in time."""

    def __init__(self, task_ref: str, timeout: float):
        super().__init__(
            f"timeout waiting for proxmox task {task_ref} after {timeout:.0f}s"
        )
        self.task_ref = task_ref
        self.timeout = timeout


class ReachabilityTimeoutError(DeployError):
    """A TCP endpoint on the new VM never accepted connections."""

    kind = ErrorKind.EXTERNAL_SERVICE


class ConfigurationToolError(DeployError):
    """The configuration-management run exited unsuccessfully."""

    kind = ErrorKind.EXTERNAL_SERVICE

    def __init__(self, message: str, exit_code: Optional[int] = None, output: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output


class DownloadResolutionError(DeployError):
    """An installer or server download URL could not be resolved."""

    kind = ErrorKind.EXTERNAL_SERVICE


class PersistenceError(DeployError):
    """A database read or write failed."""

    kind = ErrorKind.PERSISTENCE


class ConfigurationError(DeployError):
    """Server-side configuration is missing or invalid."""

    kind = ErrorKind.CONFIGURATION


class SecretGenerationError(DeployError):
    """The secure random source could not produce a secret."""

    kind = ErrorKind.CONFIGURATION


class DeploymentCancelledError(DeployError):
    """The pipeline observed a cancellation request at a step boundary."""

    kind = ErrorKind.CANCELLED


class DeploymentNotFoundError(DeployError):
    """No deployment exists with the requested identifier."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, deployment_id: int):
        super().__init__(f"deployment {deployment_id} not found")
        self.deployment_id = deployment_id
