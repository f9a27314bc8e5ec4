"""Configuration management using Pydantic settings."""

from typing import List, Literal, Optional, TYPE_CHECKING

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application settings
    app_name: str = "Game Server Deployer"
    debug: bool = False

    # Persistence
    database_path: str = "data/deployer.db"

    # Pipeline behaviour
    dry_run: bool = False  # Simulate hypervisor and Ansible steps
    worker_poll_interval_seconds: float = 5.0
    pipeline_failure_policy: Literal["mark_failed", "leave_running"] = "mark_failed"

    # Address pool used when a request omits a static IP
    net_cidr: Optional[str] = None  # e.g. 192.168.1.0/24
    net_gateway: Optional[str] = None
    net_dns: Optional[str] = None  # Defaults to the gateway
    hostname_prefix: str = "mc-"

    # SSH / Ansible settings
    ssh_key_path: str = "./ssh/id_ed25519"
    ansible_binary: str = "ansible-playbook"
    ansible_playbook_path: str = "./ansible/provision_minecraft.yml"
    ansible_modpack_playbook_path: str = "./ansible/provision_minecraft_modpack.yml"

    # Server downloads
    curseforge_api_key: Optional[str] = None  # Required for CurseForge modpacks
    download_timeout_seconds: float = 15.0

    # Proxmox fallback configuration (used when no config is stored in the DB)
    proxmox_api_url: Optional[str] = None
    proxmox_token_id: Optional[str] = None
    proxmox_token_secret: Optional[str] = None
    proxmox_default_node: Optional[str] = None
    proxmox_default_storage: Optional[str] = None
    proxmox_default_bridge: str = "vmbr0"
    proxmox_template_vmid: int = 0
    proxmox_ssh_user: Optional[str] = None
    proxmox_allowed_nodes: List[str] = []  # JSON list; empty allows any node

    # Proxmox API connection settings
    proxmox_insecure_tls: bool = False  # Accept self-signed lab certificates
    proxmox_request_timeout_seconds: float = 30.0
    task_poll_interval_seconds: float = 3.0

    # Step timeouts (seconds)
    clone_timeout_seconds: float = 1800.0
    resize_timeout_seconds: float = 1800.0
    start_timeout_seconds: float = 600.0
    reachability_timeout_seconds: float = 900.0
    stop_timeout_seconds: float = 300.0
    delete_timeout_seconds: float = 600.0

    management_port: int = 22
    vm_tag: str = "minecraft-auto"

    class Config:
        env_file = ".env"
        case_sensitive = False

    def get_net_dns(self) -> Optional[str]:
        """Return the DNS server for allocated addresses, falling back to the gateway."""
        return self.net_dns or self.net_gateway

    def has_proxmox_credentials(self) -> bool:
        """Check if fallback Proxmox credentials are configured."""
        return bool(
            self.proxmox_api_url and self.proxmox_token_id and self.proxmox_token_secret
        )


settings = Settings()


if TYPE_CHECKING:  # pragma: no cover - only for type hints
    from .config_validation import ConfigValidationResult

# Cache of the configuration validation result so it can be reused across modules
_config_validation_result: Optional["ConfigValidationResult"] = None


def set_config_validation_result(result: "ConfigValidationResult") -> None:
    """Persist the configuration validation result for reuse."""

    global _config_validation_result
    _config_validation_result = result


def get_config_validation_result() -> Optional["ConfigValidationResult"]:
    """Return the cached configuration validation result, if any."""

    return _config_validation_result
