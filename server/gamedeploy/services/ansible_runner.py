"""Invocation of the ansible-playbook run that installs the game server."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from ..core.config import Settings
from ..core.errors import ConfigurationToolError
from ..core.pydantic_models import MinecraftConfig
from .process_invoker import ProcessInvoker

logger = logging.getLogger(__name__)

OUTPUT_TAIL_CHARS = 4000


class AnsibleRunner:
    """Build and run the ansible-playbook command for one host."""

    def __init__(
        self,
        invoker: ProcessInvoker,
        *,
        binary: str = "ansible-playbook",
        playbook_path: str = "./ansible/provision_minecraft.yml",
        modpack_playbook_path: str = "./ansible/provision_minecraft_modpack.yml",
        private_key_path: Optional[str] = "./ssh/id_ed25519",
    ):
        self._invoker = invoker
        self._binary = binary
        self._playbook_path = playbook_path
        self._modpack_playbook_path = modpack_playbook_path
        self._private_key_path = private_key_path

    @classmethod
    def from_settings(cls, invoker: ProcessInvoker, config: Settings) -> "AnsibleRunner":
        return cls(
            invoker,
            binary=config.ansible_binary,
            playbook_path=config.ansible_playbook_path,
            modpack_playbook_path=config.ansible_modpack_playbook_path,
            private_key_path=config.ssh_key_path,
        )

    def select_playbook(self, minecraft: MinecraftConfig) -> str:
        if minecraft.modpack is not None:
            return self._modpack_playbook_path
        return self._playbook_path

    def build_arguments(
        self,
        minecraft: MinecraftConfig,
        host_ip: str,
        ssh_user: Optional[str] = None,
        extra_vars: Optional[Dict[str, Any]] = None,
    ) -> List[str]:
        variables = minecraft.to_ansible_vars()
        if extra_vars:
            variables.update(extra_vars)
        variables["target_host"] = host_ip

        args = [self.select_playbook(minecraft), "-i", f"{host_ip},"]
        if ssh_user:
            args.extend(["-u", ssh_user])
        args.extend(["--extra-vars", json.dumps(variables)])
        return args

    def build_environment(self) -> Dict[str, str]:
        env = {"ANSIBLE_HOST_KEY_CHECKING": "False"}
        if self._private_key_path:
            env["ANSIBLE_PRIVATE_KEY_FILE"] = self._private_key_path
        return env

    async def run(
        self,
        minecraft: MinecraftConfig,
        host_ip: str,
        ssh_user: Optional[str] = None,
        extra_vars: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Run the playbook against ``host_ip``; raise on a non-zero exit."""
        args = self.build_arguments(minecraft, host_ip, ssh_user, extra_vars)
        logger.info(
            "Running %s %s against %s", self._binary, self.select_playbook(minecraft), host_ip
        )
        result = await self._invoker.run(self._binary, args, env=self.build_environment())
        if result.exit_code == 0:
            return

        output = "\n".join(part for part in (result.stdout, result.stderr) if part).strip()
        if len(output) > OUTPUT_TAIL_CHARS:
            output = output[-OUTPUT_TAIL_CHARS:]
        logger.error("ansible-playbook exited with %s for %s", result.exit_code, host_ip)
        message = f"ansible-playbook exited with status {result.exit_code}"
        if output:
            message = f"{message}\n\nAnsible output:\n{output}"
        raise ConfigurationToolError(message, exit_code=result.exit_code, output=output)
