"""Resolution of server downloads passed to the provisioning playbook."""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional, Protocol, Tuple

import defusedxml.ElementTree as ET
import httpx

from ..core.config import Settings
from ..core.errors import DownloadResolutionError
from ..core.pydantic_models import MinecraftConfig, ModpackSpec, ServerType

logger = logging.getLogger(__name__)

MOJANG_MANIFEST_URL = "https://piston-meta.mojang.com/mc/game/version_manifest_v2.json"
FORGE_PROMOTIONS_URL = "https://files.minecraftforge.net/net/minecraftforge/forge/promotions_slim.json"
FORGE_MAVEN_URL = "https://maven.minecraftforge.net/net/minecraftforge/forge"
NEOFORGE_MAVEN_URL = "https://maven.neoforged.net/releases/net/neoforged/neoforge"
FABRIC_META_URL = "https://meta.fabricmc.net/v2"
CURSEFORGE_API_URL = "https://api.curseforge.com"

CURSEFORGE_PROVIDER = "curseforge"

# Only plain releases such as 1.20.4; snapshots and release candidates are refused.
_RELEASE_VERSION = re.compile(r"^1\.\d+\.\d+$")


class DownloadResolver(Protocol):
    async def resolve(self, minecraft: MinecraftConfig) -> Dict[str, Any]:
        """Return extra playbook variables carrying resolved download URLs."""
        ...


def _require_release(version: str, distribution: str) -> None:
    if not _RELEASE_VERSION.match(version):
        raise DownloadResolutionError(
            f"version {version!r} is not a valid {distribution} release (use 1.x.y)"
        )


def _dicts(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [entry for entry in value if isinstance(entry, dict)]


def _pick_stable(entries: List[Any], required: str) -> Optional[Dict[str, Any]]:
    """First stable entry carrying ``required``, else the first such entry at all."""
    usable = [entry for entry in entries if isinstance(entry, dict) and entry.get(required)]
    for entry in usable:
        if entry.get("stable"):
            return entry
    return usable[0] if usable else None


class MinecraftDownloadResolver:
    """Resolve server JARs, loader installers and modpack archives.

    Vanilla JARs come from Mojang's version manifest, Forge from its promotion
    list (recommended builds only), NeoForge from its Maven metadata, Fabric
    from Fabric meta and modpacks from the CurseForge API. Anything that cannot
    be resolved raises ``DownloadResolutionError`` so that the job fails before
    the playbook runs without something to install.
    """

    def __init__(
        self,
        curseforge_api_key: Optional[str] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        manifest_url: str = MOJANG_MANIFEST_URL,
    ):
        self._curseforge_api_key = (curseforge_api_key or "").strip()
        self._timeout = timeout
        self._transport = transport
        self._manifest_url = manifest_url

    @classmethod
    def from_settings(cls, config: Settings) -> "MinecraftDownloadResolver":
        return cls(
            curseforge_api_key=config.curseforge_api_key,
            timeout=config.download_timeout_seconds,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def resolve(self, minecraft: MinecraftConfig) -> Dict[str, Any]:
        version = minecraft.version.strip()
        extra: Dict[str, Any] = {}

        if minecraft.modpack is not None:
            extra.update(await self.resolve_modpack(minecraft.modpack))
        elif minecraft.modpack_url:
            extra["mc_modpack_url"] = minecraft.modpack_url

        if minecraft.modpack is not None or minecraft.modpack_url:
            # Server packs rarely bundle Mojang's server.jar; their launchers need it.
            if version:
                extra["mc_server_jar_url"] = await self.resolve_vanilla_server_jar(version)
            return extra

        if minecraft.type == ServerType.VANILLA:
            extra["mc_server_jar_url"] = await self.resolve_vanilla_server_jar(version)
        elif minecraft.type == ServerType.FORGE:
            url, full_version = await self.resolve_forge_installer(version)
            extra["mc_forge_installer_url"] = url
            extra["mc_forge_full_version"] = full_version
        elif minecraft.type == ServerType.NEOFORGE:
            url, full_version = await self.resolve_neoforge_installer(version)
            extra["mc_neoforge_installer_url"] = url
            extra["mc_neoforge_full_version"] = full_version
        elif minecraft.type == ServerType.FABRIC:
            installer_url, loader_version = await self.resolve_fabric_installer(version)
            extra["mc_fabric_installer_url"] = installer_url
            extra["mc_fabric_mc_version"] = version
            extra["mc_fabric_loader_version"] = loader_version
            # The Fabric launcher runs Mojang's server.jar next to it.
            extra["mc_server_jar_url"] = await self.resolve_vanilla_server_jar(version)
        return extra

    async def resolve_vanilla_server_jar(self, version: str) -> str:
        _require_release(version, "vanilla")

        async with self._client() as client:
            manifest = await self._get_object(client, self._manifest_url, "version manifest")
            version_url = None
            for entry in manifest.get("versions", []):
                if entry.get("type") == "release" and entry.get("id") == version:
                    version_url = entry.get("url")
                    break
            if not version_url:
                raise DownloadResolutionError(f"version {version!r} is not a known vanilla release")

            details = await self._get_object(client, version_url, f"version {version}")

        url = (
            details.get("downloads", {}).get("server", {}).get("url", "") or ""
        ).strip()
        if not url:
            raise DownloadResolutionError(f"version {version} has no server download")
        logger.debug("Resolved vanilla %s server jar to %s", version, url)
        return url

    async def resolve_forge_installer(self, version: str) -> Tuple[str, str]:
        """Return the installer URL and full version of the recommended Forge build."""
        _require_release(version, "Forge")

        async with self._client() as client:
            promotions = await self._get_object(client, FORGE_PROMOTIONS_URL, "forge promotions")

        build = str((promotions.get("promos") or {}).get(f"{version}-recommended") or "").strip()
        if not build:
            raise DownloadResolutionError(f"no recommended Forge build for Minecraft {version}")
        full_version = f"{version}-{build}"
        url = f"{FORGE_MAVEN_URL}/{full_version}/forge-{full_version}-installer.jar"
        logger.debug("Resolved Forge %s installer to %s", version, url)
        return url, full_version

    async def resolve_neoforge_installer(self, version: str) -> Tuple[str, str]:
        """Return the installer URL and version of the newest stable NeoForge build.

        NeoForge numbers its builds after the game version: 1.20.6 maps to
        20.6.<patch>.
        """
        _require_release(version, "NeoForge")
        _, minor, patch = version.split(".")
        prefix = f"{minor}.{patch}."

        async with self._client() as client:
            metadata = await self._get_text(
                client, f"{NEOFORGE_MAVEN_URL}/maven-metadata.xml", "neoforge metadata"
            )
        try:
            root = ET.fromstring(metadata)
        except (ET.ParseError, ValueError) as exc:
            raise DownloadResolutionError(f"could not decode neoforge metadata: {exc}") from exc

        best_version = None
        best_patch = -1
        for node in root.iter("version"):
            candidate = (node.text or "").strip()
            # Betas carry a suffix such as 21.0.0-beta.
            if "-" in candidate or not candidate.startswith(prefix):
                continue
            try:
                build = int(candidate[len(prefix):])
            except ValueError:
                continue
            if build > best_patch:
                best_patch = build
                best_version = candidate

        if best_version is None:
            raise DownloadResolutionError(f"no NeoForge build found for Minecraft {version}")
        url = f"{NEOFORGE_MAVEN_URL}/{best_version}/neoforge-{best_version}-installer.jar"
        logger.debug("Resolved NeoForge %s installer to %s", version, url)
        return url, best_version

    async def resolve_fabric_installer(self, version: str) -> Tuple[str, str]:
        """Return the stable Fabric installer URL and the loader version for ``version``."""
        _require_release(version, "Fabric")

        async with self._client() as client:
            loaders = await self._get_json(
                client, f"{FABRIC_META_URL}/versions/loader/{version}", f"fabric loaders for {version}"
            )
            installers = await self._get_json(
                client, f"{FABRIC_META_URL}/versions/installer", "fabric installers"
            )

        loader = _pick_stable(
            [entry.get("loader") for entry in _dicts(loaders)], required="version"
        )
        if loader is None:
            raise DownloadResolutionError(f"no Fabric loader for Minecraft {version}")

        installer = _pick_stable(_dicts(installers), required="url")
        if installer is None:
            raise DownloadResolutionError("no Fabric installer found")

        return installer["url"], loader["version"]

    async def resolve_modpack(self, modpack: ModpackSpec) -> Dict[str, Any]:
        """Resolve a CurseForge modpack file to its download URL."""
        if modpack.provider != CURSEFORGE_PROVIDER:
            raise DownloadResolutionError(f"unsupported modpack provider: {modpack.provider}")
        if not self._curseforge_api_key:
            raise DownloadResolutionError("CurseForge API key is not configured (CURSEFORGE_API_KEY)")

        path = f"/v1/mods/{modpack.project_id}/files/{modpack.file_id}"
        # The API endpoint redirects to the file when no direct edge URL is offered.
        url = f"{CURSEFORGE_API_URL}{path}/download"
        headers = {"Accept": "application/json", "x-api-key": self._curseforge_api_key}
        async with self._client() as client:
            try:
                body = await self._get_json(
                    client, f"{CURSEFORGE_API_URL}{path}/download-url", "curseforge download url",
                    headers=headers,
                )
            except DownloadResolutionError as exc:
                logger.warning("CurseForge direct URL lookup failed (%s); using API download", exc.message)
            else:
                direct = body.get("data") if isinstance(body, dict) else None
                if isinstance(direct, str) and direct.strip():
                    url = direct.strip()

        return {
            "mc_modpack_url": url,
            "mc_modpack_provider": modpack.provider,
            "mc_modpack_project_id": modpack.project_id,
            "mc_modpack_file_id": modpack.file_id,
        }

    @staticmethod
    async def _fetch(
        client: httpx.AsyncClient, url: str, label: str, headers: Optional[Dict[str, str]] = None
    ) -> httpx.Response:
        try:
            response = await client.get(url, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise DownloadResolutionError(
                f"{label} returned {exc.response.status_code}"
            ) from exc
        except httpx.RequestError as exc:
            raise DownloadResolutionError(f"could not fetch {label}: {exc}") from exc
        return response

    @classmethod
    async def _get_json(
        cls,
        client: httpx.AsyncClient,
        url: str,
        label: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        response = await cls._fetch(client, url, label, headers)
        try:
            return response.json()
        except ValueError as exc:
            raise DownloadResolutionError(f"could not decode {label}: {exc}") from exc

    @classmethod
    async def _get_object(cls, client: httpx.AsyncClient, url: str, label: str) -> Dict[str, Any]:
        body = await cls._get_json(client, url, label)
        if not isinstance(body, dict):
            raise DownloadResolutionError(f"{label} is not a JSON object")
        return body

    @classmethod
    async def _get_text(cls, client: httpx.AsyncClient, url: str, label: str) -> str:
        response = await cls._fetch(client, url, label)
        return response.text
