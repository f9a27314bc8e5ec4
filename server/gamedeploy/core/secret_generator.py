"""Random credentials for RCON and the per-server admin account."""
import logging
import secrets
import string
from typing import Callable

from .errors import SecretGenerationError

logger = logging.getLogger(__name__)

ALPHABET = string.ascii_lowercase + string.ascii_uppercase + string.digits

DEFAULT_LENGTH = 16
RCON_PASSWORD_LENGTH = 24
ADMIN_PASSWORD_LENGTH = 20


def generate_password(
    length: int = DEFAULT_LENGTH,
    randbelow: Callable[[int], int] = secrets.randbelow,
) -> str:
    """Return ``length`` characters drawn from ``ALPHABET`` with a CSPRNG.

    Any failure of the random source is raised as ``SecretGenerationError``;
    there is no fallback to a predictable value.
    """
    if length <= 0:
        length = DEFAULT_LENGTH
    try:
        return "".join(ALPHABET[randbelow(len(ALPHABET))] for _ in range(length))
    except (NotImplementedError, OSError) as exc:
        logger.error("Secure random source unavailable: %s", exc)
        raise SecretGenerationError(f"secure random source unavailable: {exc}") from exc
