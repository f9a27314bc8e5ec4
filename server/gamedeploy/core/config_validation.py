"""Configuration validation utilities."""
from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from .config import (
    settings,
    set_config_validation_result,
    get_config_validation_result,
)


@dataclass
class ConfigIssue:
    """Represents a single configuration issue."""

    message: str
    hint: Optional[str] = None


@dataclass
class ConfigValidationResult:
    """Outcome of running configuration checks."""

    checked_at: datetime
    errors: List[ConfigIssue] = field(default_factory=list)
    warnings: List[ConfigIssue] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)


def _warn(result: ConfigValidationResult, message: str, hint: Optional[str] = None) -> None:
    result.warnings.append(ConfigIssue(message=message, hint=hint))


def _error(result: ConfigValidationResult, message: str, hint: Optional[str] = None) -> None:
    result.errors.append(ConfigIssue(message=message, hint=hint))


def run_config_checks(force: bool = False) -> ConfigValidationResult:
    """Validate configuration combinations and cache the result."""

    if not force:
        cached = get_config_validation_result()
        if cached is not None:
            return cached

    result = ConfigValidationResult(checked_at=datetime.now(timezone.utc))

    if settings.dry_run:
        _warn(
            result,
            "DRY_RUN is enabled; no virtual machines will be created.",
            "Unset DRY_RUN once the hypervisor and Ansible are reachable.",
        )

    # Address pool: optional, but must be valid IPv4 when present.
    if settings.net_cidr:
        try:
            network = ipaddress.ip_network(settings.net_cidr, strict=False)
        except ValueError:
            _error(
                result,
                f"NET_CIDR '{settings.net_cidr}' is not a valid network.",
                "Use CIDR notation such as 192.168.1.0/24.",
            )
        else:
            if network.version != 4:
                _error(
                    result,
                    "NET_CIDR must be an IPv4 network.",
                    "Automatic address allocation only supports IPv4 pools.",
                )
        if not settings.net_gateway:
            _error(
                result,
                "NET_GATEWAY is required when NET_CIDR is set.",
                "Set NET_GATEWAY to the default gateway of the address pool.",
            )
    else:
        _warn(
            result,
            "NET_CIDR is not set; every deployment must provide a static IP address.",
            "Set NET_CIDR and NET_GATEWAY to enable automatic address allocation.",
        )

    if settings.net_gateway:
        try:
            ipaddress.ip_address(settings.net_gateway)
        except ValueError:
            _error(
                result,
                f"NET_GATEWAY '{settings.net_gateway}' is not a valid IP address.",
            )

    if not settings.dry_run and not Path(settings.ssh_key_path).exists():
        _warn(
            result,
            f"SSH private key not found at {settings.ssh_key_path}.",
            "A new key pair will be generated at startup; add its public key to the VM template.",
        )

    if not settings.has_proxmox_credentials():
        _warn(
            result,
            "Proxmox credentials are not configured in the environment.",
            "Store a hypervisor configuration in the database or set PROXMOX_API_URL, "
            "PROXMOX_TOKEN_ID and PROXMOX_TOKEN_SECRET.",
        )
    elif not settings.proxmox_default_node or not settings.proxmox_template_vmid:
        _warn(
            result,
            "PROXMOX_DEFAULT_NODE or PROXMOX_TEMPLATE_VMID is not set.",
            "Requests that omit node or template_vmid will fail without these defaults.",
        )

    if settings.worker_poll_interval_seconds <= 0:
        _error(
            result,
            "WORKER_POLL_INTERVAL_SECONDS must be positive.",
        )

    set_config_validation_result(result)
    return result
