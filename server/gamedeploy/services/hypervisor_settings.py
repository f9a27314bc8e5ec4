"""Lookup of the hypervisor connection settings used by the worker and teardown."""
from __future__ import annotations

import logging

from ..core.config import Settings
from ..core.errors import ConfigurationError
from ..core.models import HypervisorConfig
from .deployment_store import DeploymentStore

logger = logging.getLogger(__name__)


def resolve_hypervisor_config(store: DeploymentStore, app_settings: Settings) -> HypervisorConfig:
    """Return the stored Proxmox configuration, falling back to the environment.

    Raises ``ConfigurationError`` when neither source provides credentials.
    """
    stored = store.load_hypervisor_config()
    if stored is not None:
        return stored

    if not app_settings.has_proxmox_credentials():
        raise ConfigurationError(
            "Proxmox configuration not set; store it or define PROXMOX_API_URL, "
            "PROXMOX_TOKEN_ID and PROXMOX_TOKEN_SECRET"
        )

    logger.debug("Using Proxmox configuration from environment settings")
    return HypervisorConfig(
        api_url=app_settings.proxmox_api_url,
        api_token_id=app_settings.proxmox_token_id,
        api_token_secret=app_settings.proxmox_token_secret,
        default_node=app_settings.proxmox_default_node or "",
        default_storage=app_settings.proxmox_default_storage or "",
        default_bridge=app_settings.proxmox_default_bridge,
        template_vmid=app_settings.proxmox_template_vmid,
        ssh_user=app_settings.proxmox_ssh_user,
        allowed_nodes=list(app_settings.proxmox_allowed_nodes),
    )
