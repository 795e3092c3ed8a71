"""
External command execution with streamed output.

Used by the installer for the dependency installer and build steps.
Output is delivered line by line to a callback while the command runs.
"""

import asyncio
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Protocol

from mcp_station.utils.logging import get_logger

logger = get_logger(__name__)

LineCallback = Callable[[str, str], None]

# Buffer limit for child output streams; longer lines are delivered in chunks.
STREAM_LIMIT = 1024 * 1024


@dataclass
class CommandResult:
    """Outcome of an external command."""

    command: List[str]
    returncode: Optional[int]
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.returncode == 0


class CommandRunner(Protocol):
    """Callable that runs a command in a directory and streams its output."""

    def __call__(
        self,
        command: List[str],
        cwd: Path,
        on_line: Optional[LineCallback] = None,
        timeout: Optional[float] = None,
    ) -> Awaitable[CommandResult]:
        ...


async def read_line(stream: asyncio.StreamReader) -> bytes:
    """
    Read the next line, or the next chunk of a line longer than the stream limit.

    Returns an empty bytes object at end of stream.
    """
    try:
        return await stream.readuntil(b"\n")
    except asyncio.IncompleteReadError as e:
        return e.partial
    except asyncio.LimitOverrunError as e:
        return await stream.read(e.consumed)


async def _pump(stream: asyncio.StreamReader, stream_name: str, on_line: Optional[LineCallback]) -> None:
    while True:
        line = await read_line(stream)
        if not line:
            break
        text = line.decode("utf-8", errors="replace").rstrip()
        if on_line is not None:
            on_line(stream_name, text)


async def run_streaming(
    command: List[str],
    cwd: Path,
    on_line: Optional[LineCallback] = None,
    timeout: Optional[float] = None,
) -> CommandResult:
    """
    Run a command, streaming stdout/stderr lines to ``on_line``.

    Args:
        command: Program and arguments
        cwd: Working directory
        on_line: Called with (stream name, line) for each output line
        timeout: Seconds before the command is killed

    Returns:
        CommandResult; a missing executable or timeout is reported through
        ``error`` instead of raising
    """
    executable = shutil.which(command[0])
    if executable is None:
        message = f"Command not found: {command[0]}"
        logger.warning(message)
        return CommandResult(command=command, returncode=None, error=message)

    logger.info(f"Running: {' '.join(command)} (cwd={cwd})")

    try:
        process = await asyncio.create_subprocess_exec(
            executable,
            *command[1:],
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STREAM_LIMIT,
        )
    except OSError as e:
        logger.warning(f"Failed to launch {command[0]}: {e}")
        return CommandResult(command=command, returncode=None, error=str(e))

    readers = asyncio.gather(
        _pump(process.stdout, "stdout", on_line),
        _pump(process.stderr, "stderr", on_line),
    )

    try:
        await asyncio.wait_for(asyncio.shield(readers), timeout=timeout)
        returncode = await process.wait()
    except asyncio.TimeoutError:
        logger.warning(f"Command timed out after {timeout}s: {' '.join(command)}")
        process.kill()
        await process.wait()
        readers.cancel()
        await asyncio.gather(readers, return_exceptions=True)
        return CommandResult(
            command=command,
            returncode=process.returncode,
            error=f"Timed out after {timeout}s",
        )

    logger.debug(f"Command exited with code {returncode}: {' '.join(command)}")
    return CommandResult(command=command, returncode=returncode)
