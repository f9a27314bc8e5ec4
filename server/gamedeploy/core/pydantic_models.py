"""Pydantic models for deployment requests and results.

Both payloads are stored as JSON text (``deployments.request_json``,
``jobs.payload_json`` and ``deployments.result_json``) and therefore carry an
explicit ``schema_version``. Older rows are upgraded on load by the registered
upgraders, one version step at a time:

- Request v1: the first, unversioned payload where empty strings and zero
  values meant "not set" (``"ip_address": ""``, ``"port": 0``,
  ``"backup_enabled": false``).
- Request v2: unset values are ``null``; explicit ``false`` for backups/RCON is
  honoured instead of being treated as "not configured".

To change a schema, bump the CURRENT_* constant, register an upgrader for the
previous version and keep the old upgraders untouched.
"""
import json
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


CURRENT_REQUEST_SCHEMA_VERSION = 2
CURRENT_RESULT_SCHEMA_VERSION = 1


class Edition(str, Enum):
    """Minecraft edition."""
    JAVA = "java"


class ServerType(str, Enum):
    """Server distribution installed by the playbook."""
    VANILLA = "vanilla"
    PAPER = "paper"
    PURPUR = "purpur"
    FORGE = "forge"
    FABRIC = "fabric"
    NEOFORGE = "neoforge"


class ModDescriptor(BaseModel):
    """A single mod to download onto the server."""
    url: str
    hash: Optional[str] = None


class ModpackSpec(BaseModel):
    """A server modpack hosted by an external provider."""
    provider: str = "curseforge"
    project_id: int
    file_id: int


class MinecraftConfig(BaseModel):
    """Application-level configuration of the game server."""

    model_config = ConfigDict(extra="ignore")

    edition: Edition = Edition.JAVA
    version: str = ""
    type: ServerType = ServerType.VANILLA
    modded: bool = False
    mods: List[ModDescriptor] = Field(default_factory=list)
    modpack: Optional[ModpackSpec] = None
    # Direct URL to a server pack archive; ignored when ``modpack`` is set.
    modpack_url: Optional[str] = None

    port: Optional[int] = None
    extra_ports: List[int] = Field(default_factory=list)
    eula: bool = False
    max_players: int = 20
    online_mode: bool = True
    motd: str = ""
    whitelist: List[str] = Field(default_factory=list)
    operators: List[str] = Field(default_factory=list)
    jvm_heap: Optional[str] = None  # e.g. "6144M"
    jvm_flags: str = ""

    backup_enabled: Optional[bool] = None
    backup_frequency: Optional[str] = None  # e.g. "24h"
    backup_retention: Optional[int] = None  # number of backups kept

    # Populated server-side when absent.
    rcon_enabled: Optional[bool] = None
    rcon_port: Optional[int] = None
    rcon_password: Optional[str] = None
    admin_user: Optional[str] = None
    admin_password: Optional[str] = None

    def to_ansible_vars(self) -> Dict[str, Any]:
        """Flatten the configuration into ``--extra-vars`` for ansible-playbook."""
        mods = []
        for mod in self.mods:
            entry: Dict[str, Any] = {"url": mod.url}
            if mod.hash is not None:
                entry["hash"] = mod.hash
            mods.append(entry)

        return {
            "mc_edition": self.edition.value,
            "mc_version": self.version,
            "mc_type": self.type.value,
            "mc_modded": self.modded,
            "mc_mods": mods,
            "mc_modpack": self.modpack.model_dump() if self.modpack else None,
            "mc_port": self.port,
            "mc_extra_ports": list(self.extra_ports),
            "mc_eula": self.eula,
            "mc_max_players": self.max_players,
            "mc_online_mode": self.online_mode,
            "mc_motd": self.motd,
            "mc_whitelist": list(self.whitelist),
            "mc_operators": list(self.operators),
            "mc_jvm_heap": self.jvm_heap,
            "mc_jvm_flags": self.jvm_flags,
            "mc_backup_enabled": bool(self.backup_enabled),
            "mc_backup_frequency": self.backup_frequency,
            "mc_backup_retention": self.backup_retention,
            "mc_admin_user": self.admin_user,
            "mc_admin_password": self.admin_password,
            "mc_rcon_enabled": bool(self.rcon_enabled),
            "mc_rcon_port": self.rcon_port,
            "mc_rcon_password": self.rcon_password,
        }


class DeploymentRequest(BaseModel):
    """A request to deploy one game server VM.

    Bounds and cross-field rules are enforced by
    ``core.validation.validate_deployment_request`` rather than by field
    constraints so that every rejection carries a readable message.
    """

    model_config = ConfigDict(
        extra="ignore",
        json_schema_extra={
            "example": {
                "name": "survival1",
                "cores": 2,
                "memory_mb": 8192,
                "disk_gb": 20,
                "minecraft": {"type": "vanilla", "version": "1.20.4", "eula": True},
            }
        },
    )

    schema_version: int = CURRENT_REQUEST_SCHEMA_VERSION

    name: str = ""
    node: Optional[str] = None
    template_vmid: Optional[int] = None
    cores: int = 0
    memory_mb: int = 0
    disk_gb: Optional[int] = None
    storage: Optional[str] = None
    bridge: Optional[str] = None
    vlan: Optional[int] = None

    # Static networking; all optional because the allocator fills them in.
    ip_address: Optional[str] = None
    cidr: Optional[int] = None
    gateway: Optional[str] = None
    dns: Optional[str] = None
    hostname: Optional[str] = None

    minecraft: MinecraftConfig = Field(default_factory=MinecraftConfig)
    backup_notes: Optional[str] = None


class DeploymentResult(BaseModel):
    """Connection details recorded on a successful deployment."""

    schema_version: int = CURRENT_RESULT_SCHEMA_VERSION

    vmid: int
    ip: str
    hostname: Optional[str] = None
    job: int
    run: str
    port: Optional[int] = None
    mc_dir: str
    mc_user: str
    sftp_user: Optional[str] = None
    sftp_password: Optional[str] = None
    rcon_host: Optional[str] = None
    rcon_port: Optional[int] = None
    rcon_password: Optional[str] = None
    dry_run: bool = False


# ============================================================================
# Schema upgrades
# ============================================================================

PayloadUpgrader = Callable[[Dict[str, Any]], Dict[str, Any]]

_REQUEST_BLANK_STRINGS = (
    "node", "storage", "bridge", "ip_address", "gateway", "dns", "hostname", "backup_notes",
)
_REQUEST_ZERO_INTS = ("template_vmid", "cidr", "disk_gb")
_MINECRAFT_BLANK_STRINGS = (
    "jvm_heap", "modpack_url", "backup_frequency", "rcon_password", "admin_user", "admin_password",
)
_MINECRAFT_ZERO_INTS = ("port", "rcon_port", "backup_retention")
_MINECRAFT_FALSE_FLAGS = ("backup_enabled", "rcon_enabled")


def _upgrade_request_v1_to_v2(data: Dict[str, Any]) -> Dict[str, Any]:
    upgraded = dict(data)
    for key in _REQUEST_BLANK_STRINGS:
        if isinstance(upgraded.get(key), str) and not upgraded[key].strip():
            upgraded[key] = None
    for key in _REQUEST_ZERO_INTS:
        if upgraded.get(key) == 0:
            upgraded[key] = None

    minecraft = dict(upgraded.get("minecraft") or {})
    for key in _MINECRAFT_BLANK_STRINGS:
        if isinstance(minecraft.get(key), str) and not minecraft[key].strip():
            minecraft[key] = None
    for key in _MINECRAFT_ZERO_INTS:
        if minecraft.get(key) == 0:
            minecraft[key] = None
    for key in _MINECRAFT_FALSE_FLAGS:
        if minecraft.get(key) is False:
            minecraft[key] = None
    for key in ("mods", "extra_ports", "whitelist", "operators"):
        if minecraft.get(key) is None:
            minecraft.pop(key, None)
    upgraded["minecraft"] = minecraft
    upgraded["schema_version"] = 2
    return upgraded


_REQUEST_UPGRADERS: Dict[int, PayloadUpgrader] = {
    1: _upgrade_request_v1_to_v2,
}

_RESULT_UPGRADERS: Dict[int, PayloadUpgrader] = {}


def _upgrade(
    data: Dict[str, Any],
    current: int,
    upgraders: Dict[int, PayloadUpgrader],
    label: str,
) -> Dict[str, Any]:
    version = data.get("schema_version", 1)
    if not isinstance(version, int) or version < 1:
        raise ValueError(f"{label} payload has invalid schema_version {version!r}")
    if version > current:
        raise ValueError(
            f"{label} payload schema_version {version} is newer than supported version {current}"
        )
    while version < current:
        upgrader = upgraders.get(version)
        if upgrader is None:
            raise ValueError(f"no upgrade path for {label} schema_version {version}")
        data = upgrader(data)
        version = data["schema_version"]
    return data


def _as_dict(raw: Union[str, bytes, Dict[str, Any]], label: str) -> Dict[str, Any]:
    data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
    if not isinstance(data, dict):
        raise ValueError(f"{label} payload must be a JSON object, got {type(data).__name__}")
    return data


def load_request_payload(raw: Union[str, bytes, Dict[str, Any]]) -> DeploymentRequest:
    """Decode a stored deployment request, upgrading older schema versions."""
    data = _upgrade(
        _as_dict(raw, "request"),
        CURRENT_REQUEST_SCHEMA_VERSION,
        _REQUEST_UPGRADERS,
        "request",
    )
    return DeploymentRequest.model_validate(data)


def load_result_payload(raw: Union[str, bytes, Dict[str, Any]]) -> DeploymentResult:
    """Decode a stored deployment result, upgrading older schema versions."""
    data = _upgrade(
        _as_dict(raw, "result"),
        CURRENT_RESULT_SCHEMA_VERSION,
        _RESULT_UPGRADERS,
        "result",
    )
    return DeploymentResult.model_validate(data)
