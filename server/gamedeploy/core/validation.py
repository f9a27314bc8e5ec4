"""Deployment request validation.

Validation is pure: it never touches the database or the network, so it is safe
to call from the API path, from tests and from the worker concurrently.
"""
import ipaddress
from typing import Any, Dict

from pydantic import ValidationError

from .errors import RequestValidationError
from .pydantic_models import CURRENT_REQUEST_SCHEMA_VERSION, DeploymentRequest, ServerType


MIN_CORES = 1
MAX_CORES = 4

# Memory is sold in fixed tiers (4, 8, 12, 16, 24, 32 GB).
ALLOWED_MEMORY_MB = (4096, 8192, 12288, 16384, 24576, 32768)

MIN_DISK_GB = 10
MAX_DISK_GB = 500

MIN_PREFIX_LENGTH = 8
MAX_PREFIX_LENGTH = 32

MIN_PORT = 1
MAX_PORT = 65535

# Distributions whose installers are resolved from a game version.
VERSIONED_SERVER_TYPES = frozenset({
    ServerType.VANILLA,
    ServerType.FORGE,
    ServerType.FABRIC,
    ServerType.NEOFORGE,
})


def _is_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def parse_deployment_request(data: Dict[str, Any]) -> DeploymentRequest:
    """Build a request model from raw JSON, reporting type errors as validation errors."""
    try:
        return DeploymentRequest.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise RequestValidationError(
            f"invalid {location or 'request'}: {first.get('msg', 'invalid value')}",
            field=location or None,
        ) from exc


def validate_deployment_request(request: DeploymentRequest) -> None:
    """Raise ``RequestValidationError`` if the request cannot be admitted."""

    # Older payloads are only upgraded when read back from storage.
    if request.schema_version != CURRENT_REQUEST_SCHEMA_VERSION:
        raise RequestValidationError(
            f"schema_version must be {CURRENT_REQUEST_SCHEMA_VERSION}", field="schema_version"
        )

    if not request.name or not request.name.strip():
        raise RequestValidationError("name is required", field="name")

    if request.cores < MIN_CORES:
        raise RequestValidationError(f"cores must be >= {MIN_CORES}", field="cores")
    if request.cores > MAX_CORES:
        raise RequestValidationError(f"cores must be <= {MAX_CORES}", field="cores")

    if request.memory_mb not in ALLOWED_MEMORY_MB:
        allowed = ", ".join(str(value) for value in ALLOWED_MEMORY_MB)
        raise RequestValidationError(
            f"memory_mb must be one of: {allowed}", field="memory_mb"
        )

    if request.disk_gb is not None:
        if request.disk_gb < MIN_DISK_GB:
            raise RequestValidationError(
                f"disk must be at least {MIN_DISK_GB} GB", field="disk_gb"
            )
        if request.disk_gb > MAX_DISK_GB:
            raise RequestValidationError(
                f"disk must be <= {MAX_DISK_GB} GB", field="disk_gb"
            )

    # Static networking is optional; when given it must be complete and well formed.
    if request.ip_address:
        if not _is_ip(request.ip_address):
            raise RequestValidationError(
                f"invalid ip_address: {request.ip_address}", field="ip_address"
            )
        if request.cidr is None or not MIN_PREFIX_LENGTH <= request.cidr <= MAX_PREFIX_LENGTH:
            raise RequestValidationError(f"invalid cidr: {request.cidr}", field="cidr")
        if not request.gateway or not _is_ip(request.gateway):
            raise RequestValidationError(
                f"invalid gateway: {request.gateway}", field="gateway"
            )
    elif request.gateway and not _is_ip(request.gateway):
        raise RequestValidationError(f"invalid gateway: {request.gateway}", field="gateway")

    if request.dns and not _is_ip(request.dns):
        raise RequestValidationError(f"invalid dns: {request.dns}", field="dns")

    minecraft = request.minecraft
    if minecraft.type in VERSIONED_SERVER_TYPES and not minecraft.version.strip():
        raise RequestValidationError(
            "minecraft.version is required (e.g. 1.20.4)", field="minecraft.version"
        )

    if minecraft.port is not None and not MIN_PORT <= minecraft.port <= MAX_PORT:
        raise RequestValidationError(
            f"minecraft.port must be between {MIN_PORT} and {MAX_PORT}",
            field="minecraft.port",
        )
    if minecraft.rcon_port is not None and not MIN_PORT <= minecraft.rcon_port <= MAX_PORT:
        raise RequestValidationError(
            f"minecraft.rcon_port must be between {MIN_PORT} and {MAX_PORT}",
            field="minecraft.rcon_port",
        )
    for port in minecraft.extra_ports:
        if not MIN_PORT <= port <= MAX_PORT:
            raise RequestValidationError(
                f"extra port {port} must be between {MIN_PORT} and {MAX_PORT}",
                field="minecraft.extra_ports",
            )

    if minecraft.max_players <= 0:
        raise RequestValidationError(
            "max_players must be > 0", field="minecraft.max_players"
        )
    if minecraft.backup_retention is not None and minecraft.backup_retention <= 0:
        raise RequestValidationError(
            "backup_retention must be > 0", field="minecraft.backup_retention"
        )
