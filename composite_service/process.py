"""
Process handle for supervised services.

Wraps exactly one OS process: spawns it without a shell in its own process
group, merges stdout/stderr into one line stream, and tells an exit we asked
for apart from a crash. A handle is never reused; restarts get a new one.
"""

import asyncio
import logging
import os
import signal
from collections import deque
from typing import Awaitable, Callable, Optional

from .errors import ProcessSpawnError
from .stream import LineStream

logger = logging.getLogger(__name__)

# Generous line limit for chatty services (default is 64 KiB)
STREAM_LIMIT = 1024 * 1024


class ProcessHandle:
    """One running service process."""

    def __init__(
        self,
        command: list[str],
        env: Optional[dict[str, str]] = None,
        cwd: Optional[str] = None,
        log_tail_length: int = 0,
        on_crash: Optional[Callable[["ProcessHandle"], None]] = None,
        force_kill_timeout: Optional[float] = None,
    ):
        self.command = list(command)
        self.env = env
        self.cwd = cwd
        self.output = LineStream()
        self.log_tail: deque[str] = deque(maxlen=log_tail_length)
        self.process: Optional[asyncio.subprocess.Process] = None
        self.ended: asyncio.Future = asyncio.get_running_loop().create_future()
        self._on_crash = on_crash
        self._force_kill_timeout = force_kill_timeout
        self._terminate_requested = False
        self._watcher: Optional[asyncio.Task] = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def is_ended(self) -> bool:
        return self.ended.done()

    @property
    def exit_code(self) -> Optional[int]:
        return self.ended.result() if self.is_ended else None

    async def spawn(self):
        """Start the process. Raises ProcessSpawnError if it cannot be started."""
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=self.env,
                start_new_session=True,  # Create new process group
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            self.output.close()
            self.ended.set_result(None)
            raise ProcessSpawnError(f"Could not run {self.command!r}: {e}") from e

        logger.debug(f"Spawned {self.command!r} with PID {self.process.pid}")
        self._watcher = asyncio.ensure_future(self._watch())

        # terminate() arrived while we were spawning
        if self._terminate_requested:
            self._signal_group(signal.SIGTERM)
            self._schedule_force_kill()

    def terminate(self) -> Awaitable:
        """Ask the process to exit. Resolves once it has fully exited."""
        if not self._terminate_requested:
            self._terminate_requested = True
            if self.process is not None and not self.is_ended:
                self._signal_group(signal.SIGTERM)
                self._schedule_force_kill()
        return asyncio.shield(self.ended)

    async def _watch(self):
        """Capture output until the process exits, then report a crash if unexpected."""
        await asyncio.gather(
            self._capture_output(self.process.stdout),
            self._capture_output(self.process.stderr),
        )
        returncode = await self.process.wait()
        self.output.close()
        self.ended.set_result(returncode)
        logger.debug(f"Process {self.process.pid} exited with code {returncode}")

        if not self._terminate_requested and self._on_crash:
            self._on_crash(self)

    async def _capture_output(self, stream: asyncio.StreamReader):
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                logger.warning(f"Dropped an output line over {STREAM_LIMIT} bytes from PID {self.process.pid}")
                continue
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            self.log_tail.append(line)
            self.output.write(line)

    def _signal_group(self, sig: signal.Signals):
        try:
            os.killpg(os.getpgid(self.process.pid), sig)
        except ProcessLookupError:
            pass

    def _schedule_force_kill(self):
        if self._force_kill_timeout is None:
            return
        asyncio.get_running_loop().call_later(self._force_kill_timeout, self._force_kill)

    def _force_kill(self):
        if self.is_ended:
            return
        logger.warning(f"Process {self.process.pid} did not stop gracefully, forcing kill")
        self._signal_group(signal.SIGKILL)
