"""Local process execution for node task scripts."""

import asyncio
import os
import signal
from collections.abc import Awaitable, Callable, Sequence
from contextlib import suppress
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

import structlog

logger = structlog.get_logger()

BASH = "/bin/bash"


@dataclass
class ExecuteResult:
    """Exit code and captured output of a finished process."""

    exit_code: int
    output_text: str = ""
    error_text: str = ""

    @property
    def success(self) -> bool:
        """Check if the process exited with zero."""
        return self.exit_code == 0


def get_bash_command_line(script_path: Path | str) -> str:
    """Command line used to launch a script, as ``ps`` reports it."""
    return f"{BASH} {script_path}".strip()


def _decode(data: bytes | None) -> str:
    if not data:
        return ""
    return data.decode("utf-8", errors="replace")


class ProcessExecutor:
    """Launches node task scripts and runs short captured commands."""

    async def start_script(
        self,
        script_path: Path,
        timeout: timedelta,
        on_started: Callable[[int], None],
    ) -> Awaitable[ExecuteResult]:
        """Start a bash script and return an awaitable for its completion.

        ``on_started`` is invoked with the process id as soon as the OS process
        exists. The returned awaitable raises ``TimeoutError`` after killing
        the script if it runs longer than ``timeout``.

        Raises:
            OSError: If the process cannot be started
        """
        process = await asyncio.create_subprocess_exec(
            BASH,
            str(script_path),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        on_started(process.pid)
        return asyncio.create_task(self._wait(process, timeout))

    async def _wait(self, process: asyncio.subprocess.Process, timeout: timedelta) -> ExecuteResult:
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=timeout.total_seconds()
            )
        except TimeoutError:
            # The script runs in its own session, so this takes its children down too.
            with suppress(ProcessLookupError):
                os.killpg(process.pid, signal.SIGKILL)
            await process.wait()
            raise
        return ExecuteResult(
            exit_code=process.returncode if process.returncode is not None else -1,
            output_text=_decode(stdout),
            error_text=_decode(stderr),
        )

    async def execute_capture(self, command: str, args: Sequence[object] = ()) -> ExecuteResult:
        """Run a command to completion and capture its output."""
        process = await asyncio.create_subprocess_exec(
            command,
            *[str(arg) for arg in args],
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        logger.debug(
            "Executed command", command=command, args=list(args), exit_code=process.returncode
        )
        return ExecuteResult(
            exit_code=process.returncode if process.returncode is not None else -1,
            output_text=_decode(stdout),
            error_text=_decode(stderr),
        )
