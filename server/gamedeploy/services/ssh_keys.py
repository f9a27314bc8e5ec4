"""Application-managed SSH key used by Ansible to reach new VMs."""
from __future__ import annotations

import logging
from pathlib import Path

from ..core.errors import ConfigurationError
from .process_invoker import ProcessInvoker

logger = logging.getLogger(__name__)


async def ensure_key_pair(invoker: ProcessInvoker, key_path: str) -> str:
    """Generate an ed25519 key pair at ``key_path`` if missing; return the public key."""
    private_key = Path(key_path)
    public_key = Path(f"{key_path}.pub")

    if not private_key.exists():
        private_key.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        logger.info("Generating SSH key pair at %s", private_key)
        result = await invoker.run(
            "ssh-keygen", ["-t", "ed25519", "-f", str(private_key), "-N", ""]
        )
        if result.exit_code != 0:
            raise ConfigurationError(
                f"ssh-keygen failed with status {result.exit_code}: "
                f"{(result.stderr or result.stdout).strip()}"
            )

    try:
        return public_key.read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise ConfigurationError(f"reading public key {public_key}: {exc}") from exc
