"""Narrow port for running external commands."""
from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional, Protocol, Sequence

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProcessResult:
    """Captured outcome of an external command."""

    stdout: str
    stderr: str
    exit_code: int


class ProcessInvoker(Protocol):
    async def run(
        self,
        command: str,
        args: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        stdin: Optional[str] = None,
    ) -> ProcessResult: ...


class AsyncioProcessInvoker:
    """Run commands with ``asyncio.create_subprocess_exec``.

    ``env`` entries are layered over the current process environment. A
    missing executable is reported as exit code 127, as a shell would.
    """

    async def run(
        self,
        command: str,
        args: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        stdin: Optional[str] = None,
    ) -> ProcessResult:
        merged_env = dict(os.environ)
        if env:
            merged_env.update(env)

        logger.debug("Running %s with %d argument(s)", command, len(args))
        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=merged_env,
            )
        except FileNotFoundError as exc:
            logger.error("Executable not found: %s", command)
            return ProcessResult(stdout="", stderr=str(exc), exit_code=127)

        try:
            stdout, stderr = await process.communicate(
                stdin.encode("utf-8") if stdin is not None else None
            )
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        return ProcessResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=process.returncode if process.returncode is not None else -1,
        )
