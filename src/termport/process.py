"""Process supervisor — spawn the helper, watch for its exit, and tear it down."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from termport.errors import SpawnError, TermportError

logger = logging.getLogger(__name__)

StderrMode = Literal["log", "inherit", "discard"]

#: Default seconds to wait for a graceful exit before SIGTERM.
DEFAULT_SHUTDOWN_WAIT = 2.0

#: Default seconds to wait after SIGTERM before SIGKILL.
DEFAULT_SIGTERM_WAIT = 3.0

#: Maximum bytes per stderr line from the helper (64 KB).
_MAX_STDERR_LINE = 65_536


@dataclass(frozen=True)
class ExitStatus:
    """How the helper process ended."""

    returncode: int

    @property
    def signal_name(self) -> str | None:
        """Name of the terminating signal, if the process was killed by one."""
        if self.returncode >= 0:
            return None
        try:
            return signal.Signals(-self.returncode).name
        except ValueError:
            return f"signal {-self.returncode}"

    def describe(self) -> str:
        name = self.signal_name
        if name is not None:
            return f"helper killed by {name}"
        return f"helper exited with code {self.returncode}"


class ChildProcess:
    """Handle to one spawned helper process.

    ``stdout`` is the handshake channel.  ``wait()`` is the termination
    signal and is independent of any data channel.
    """

    def __init__(self, process: asyncio.subprocess.Process, path: Path) -> None:
        self._process = process
        self.path = path
        self._stderr_task: asyncio.Task[None] | None = None
        if process.stderr is not None:
            self._stderr_task = asyncio.create_task(
                _forward_stderr(process.stderr, process.pid),
                name=f"termport-stderr-{process.pid}",
            )

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self._process.stdout

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def running(self) -> bool:
        return self._process.returncode is None

    async def wait(self) -> ExitStatus:
        """Wait for the process to exit and describe how it ended."""
        returncode = await self._process.wait()
        return ExitStatus(returncode)

    def send_signal(self, sig: int) -> None:
        """Deliver *sig*; a process that already exited is ignored."""
        with contextlib.suppress(ProcessLookupError):
            self._process.send_signal(sig)

    async def finish_stderr(self, timeout: float = 1.0) -> None:
        """Let the stderr forwarder reach EOF, cancelling it after *timeout*."""
        task = self._stderr_task
        if task is not None and not task.done():
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(task, timeout=timeout)


class ProcessSupervisor:
    """Spawns helper executables and terminates them (signal -> wait -> SIGTERM -> SIGKILL)."""

    def __init__(
        self,
        stderr: StderrMode = "log",
        shutdown_wait: float = DEFAULT_SHUTDOWN_WAIT,
        sigterm_wait: float = DEFAULT_SIGTERM_WAIT,
    ) -> None:
        self._stderr = stderr
        self._shutdown_wait = shutdown_wait
        self._sigterm_wait = sigterm_wait

    async def spawn(self, path: str | os.PathLike[str]) -> ChildProcess:
        """Start the helper at *path* with no arguments.

        Raises ``SpawnError`` if the file is missing, not executable, or
        cannot be started.
        """
        resolved = Path(path)
        if not resolved.is_file():
            msg = f"Helper executable not found: {resolved}"
            raise SpawnError(msg)
        if not os.access(resolved, os.X_OK):
            msg = f"Helper is not executable: {resolved}"
            raise SpawnError(msg)

        stderr = {
            "log": asyncio.subprocess.PIPE,
            "inherit": None,
            "discard": asyncio.subprocess.DEVNULL,
        }[self._stderr]

        try:
            process = await asyncio.create_subprocess_exec(
                str(resolved),
                stdout=asyncio.subprocess.PIPE,
                stderr=stderr,
                limit=_MAX_STDERR_LINE,
            )
        except FileNotFoundError as exc:
            msg = f"Helper executable not found: {resolved}"
            raise SpawnError(msg) from exc
        except OSError as exc:
            msg = f"Failed to start helper {resolved}: {exc}"
            raise SpawnError(msg) from exc

        child = ChildProcess(process, resolved)
        logger.info("Spawned helper %s (pid %d)", resolved, child.pid)
        return child

    async def terminate(
        self,
        child: ChildProcess,
        request_shutdown: Callable[[], Awaitable[None]] | None = None,
    ) -> ExitStatus:
        """Stop *child*: optional graceful request -> wait -> SIGTERM -> SIGKILL.

        Without *request_shutdown* the grace period is skipped.  Idempotent:
        an already-exited child is only reaped.
        """
        if child.running and request_shutdown is not None:
            try:
                await request_shutdown()
            except (TermportError, OSError) as exc:
                logger.debug("Graceful shutdown request failed: %s", exc)
            if await self._wait(child, self._shutdown_wait):
                return await self._reap(child)

        if child.running:
            logger.info("Helper pid %d still running, sending SIGTERM", child.pid)
            child.send_signal(signal.SIGTERM)
            if not await self._wait(child, self._sigterm_wait):
                logger.warning("Helper pid %d ignored SIGTERM, sending SIGKILL", child.pid)
                child.send_signal(signal.SIGKILL)

        return await self._reap(child)

    async def _wait(self, child: ChildProcess, timeout: float) -> bool:
        """Wait up to *timeout* seconds for *child* to exit."""
        try:
            await asyncio.wait_for(child.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    async def _reap(self, child: ChildProcess) -> ExitStatus:
        status = await child.wait()
        await child.finish_stderr()
        return status


async def _forward_stderr(stream: asyncio.StreamReader, pid: int) -> None:
    """Log each helper stderr line at DEBUG until EOF."""
    while True:
        try:
            line = await stream.readline()
        except ValueError:
            # Line longer than the stream limit; skip what was buffered.
            logger.debug("helper[%d] stderr line exceeds %d bytes", pid, _MAX_STDERR_LINE)
            continue
        if not line:
            return
        text = line.decode(errors="replace").rstrip()
        if text:
            logger.debug("helper[%d] %s", pid, text)
