"""Async execution of boundary CLI commands.

Credentials never appear on the command line: the auth token travels in the
child's BOUNDARY_TOKEN environment variable and the session authorization
token in BOUNDARY_CONNECT_AUTHZ_TOKEN.
"""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from gatehouse.core.exceptions import CommandError, scrub_secrets

logger = structlog.get_logger(component="boundary")

TOKEN_ENV = "BOUNDARY_TOKEN"
AUTHZ_TOKEN_ENV = "BOUNDARY_CONNECT_AUTHZ_TOKEN"


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one finished CLI invocation."""

    success: bool
    exit_code: int
    stdout: str
    stderr: str
    command: str

    def json(self) -> Any:
        """Parse stdout as JSON.

        Raises:
            ValueError: stdout is not valid JSON
        """
        return json.loads(self.stdout)

    @property
    def error_text(self) -> str:
        """Scrubbed stderr (or stdout when stderr is empty) for error messages."""
        text = self.stderr.strip() or self.stdout.strip()
        return scrub_secrets(text) or f"exit code {self.exit_code}"


class BoundaryRunner:
    """Runs the boundary executable as an asyncio subprocess."""

    def __init__(self, cli_path: str = "boundary", timeout: float = 30.0) -> None:
        self.cli_path = cli_path
        self.timeout = timeout

    def argv(
        self,
        args: Sequence[str],
        addr: str | None = None,
        cli_path: str | None = None,
    ) -> list[str]:
        argv = [cli_path or self.cli_path, *args]
        if addr:
            argv.extend(["-addr", addr])
        return argv

    @staticmethod
    def environment(
        token: str | None = None,
        extra: dict[str, str] | None = None,
    ) -> dict[str, str]:
        env = dict(os.environ)
        if token:
            env[TOKEN_ENV] = token
        if extra:
            env.update(extra)
        return env

    async def run(
        self,
        args: Sequence[str],
        addr: str | None = None,
        token: str | None = None,
        cli_path: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run a command to completion.

        A non-zero exit is reported through `CommandResult.success`, not raised.

        Raises:
            CommandError: The executable could not be started or timed out
        """
        argv = self.argv(args, addr, cli_path)
        command = " ".join(argv)
        logger.debug("Running boundary command", command=command)

        proc = await self._start(argv, token)
        limit = timeout if timeout is not None else self.timeout
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=limit)
        except TimeoutError as e:
            await self.stop(proc)
            raise CommandError(f"Command timed out after {limit:g}s: {command}", cause=e) from e
        except asyncio.CancelledError:
            await self.stop(proc)
            raise

        result = CommandResult(
            success=proc.returncode == 0,
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            command=command,
        )
        if result.success:
            logger.debug("Boundary command succeeded", command=command)
        else:
            logger.warning(
                "Boundary command failed",
                command=command,
                exit_code=result.exit_code,
                stderr=result.error_text,
            )
        return result

    async def spawn(
        self,
        args: Sequence[str],
        addr: str | None = None,
        token: str | None = None,
        cli_path: str | None = None,
        env: dict[str, str] | None = None,
    ) -> asyncio.subprocess.Process:
        """Start a long-running child with piped output.

        The caller owns the process and must release it with `stop`.

        Raises:
            CommandError: The executable could not be started
        """
        argv = self.argv(args, addr, cli_path)
        logger.debug("Spawning boundary command", command=" ".join(argv))
        return await self._start(argv, token, env)

    async def version(self, cli_path: str | None = None) -> str:
        """Return the CLI version banner.

        Raises:
            CommandError: The CLI is missing or broken
        """
        result = await self.run(["version"], cli_path=cli_path)
        if not result.success:
            raise CommandError(f"Boundary CLI verification failed: {result.error_text}")
        return result.stdout.strip()

    async def _start(
        self,
        argv: list[str],
        token: str | None,
        extra_env: dict[str, str] | None = None,
    ) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.environment(token, extra_env),
            )
        except OSError as e:
            raise CommandError(f"Failed to execute '{argv[0]}': {e}", cause=e) from e

    @staticmethod
    async def stop(proc: asyncio.subprocess.Process, grace: float = 5.0) -> None:
        """Terminate a child, killing it if it ignores the request."""
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=grace)
        except TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()
