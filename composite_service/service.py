"""
Service supervisor.

Owns one service's lifecycle: start, readiness wait, crash handling with
restart, and stop. start() and stop() are memoized, so any number of callers
share one spawn and one termination. Failures are never handled here; they
are escalated through the composite service's die function, after which the
escalating task simply never resumes.
"""

import asyncio
import inspect
import logging
import os
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, NoReturn, Optional

from .errors import InternalError, ProcessSpawnError, error_text
from .logs import to_logging_level
from .models import Crash, CrashContext, ReadyContext, ServiceConfig
from .process import ProcessHandle
from .ready import ReadinessGate
from .stream import LineStream


class ServiceState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    STARTED = "started"
    CRASHED = "crashed"
    RESTART_DELAY = "restart_delay"
    STOPPING = "stopping"
    STOPPED = "stopped"


async def never() -> NoReturn:
    """Park the calling task forever."""
    await asyncio.get_running_loop().create_future()


class ServiceSupervisor:
    """Supervises one service of a composite service."""

    def __init__(
        self,
        service_id: str,
        config: ServiceConfig,
        die: Callable[[str], Awaitable[NoReturn]],
        is_stopping: Callable[[], bool],
    ):
        self.id = service_id
        self.config = config
        self.output = LineStream()
        self.state = ServiceState.IDLE
        self.crashes: list[Crash] = []
        self.logger = logging.getLogger(f"composite_service.service.{service_id}")
        if config.log_level:
            self.logger.setLevel(to_logging_level(config.log_level))

        self._die = die
        self._is_stopping = is_stopping
        self._gate: Optional[ReadinessGate] = None
        self._handle: Optional[ProcessHandle] = None
        self._start_result: Optional[asyncio.Task] = None
        self._stop_result: Optional[asyncio.Future] = None
        self._tasks: set[asyncio.Task] = set()
        self._has_been_ready = False

    @property
    def process(self) -> Optional[ProcessHandle]:
        """The current process handle, if one was ever spawned."""
        return self._handle

    @property
    def is_ready(self) -> bool:
        return self._gate is not None and self._gate.is_ready

    @property
    def has_been_ready(self) -> bool:
        """Whether any attempt, first start or restart, ever became ready."""
        return self._has_been_ready or self.is_ready

    async def die(self, message: str) -> NoReturn:
        await self._die(f"Error in '{self.id}': {message}")
        await never()

    def start(self) -> asyncio.Task:
        """Start the service once; every call returns the same task."""
        if self._stop_result is not None:
            return self._track(self.die(str(InternalError("Cannot start after stopping"))))
        if self._start_result is None:
            self._start_result = self._track(self._start())
        return self._start_result

    def stop(self) -> asyncio.Future:
        """Stop the service once; every call returns the same future."""
        if self._stop_result is None:
            handle = self._handle
            if handle is None or handle.is_ended:
                self.state = ServiceState.STOPPED
                self._stop_result = asyncio.get_running_loop().create_future()
                self._stop_result.set_result(None)
            else:
                self.logger.info(f"Stopping service '{self.id}'...")
                self.state = ServiceState.STOPPING
                self._stop_result = self._track(self._await_stopped(handle.terminate()))
        return self._stop_result

    def cancel_pending(self):
        """Cancel tasks left parked after shutdown."""
        if self._gate is not None:
            self._gate.cancel()
        for task in list(self._tasks):
            task.cancel()

    async def _start(self):
        self.logger.info(f"Starting service '{self.id}'...")
        self.state = ServiceState.STARTING
        await self._run_process()
        self.state = ServiceState.STARTED
        self.logger.info(f"Started service '{self.id}'")

    async def _await_stopped(self, ended: Awaitable):
        await ended
        self.state = ServiceState.STOPPED
        self.logger.info(f"Stopped service '{self.id}'")

    def _abandoned(self) -> bool:
        return self._stop_result is not None or self._is_stopping()

    async def _run_process(self) -> bool:
        """
        Spawn a fresh process and wait for it to become ready.

        Returns False if a restarted process crashed before becoming ready;
        that crash has already scheduled the next restart. On the first start
        such a crash is fatal.
        """
        if self._abandoned():
            await never()

        gate = ReadinessGate(
            self.config.ready,
            ReadyContext(output=self.output),
            timeout=self.config.ready_timeout,
        )
        handle = ProcessHandle(
            self.config.command,
            env={**os.environ, **self.config.env},
            cwd=self.config.cwd,
            log_tail_length=self.config.log_tail_length,
            on_crash=self._on_crash,
            force_kill_timeout=self.config.force_kill_timeout,
        )
        self._gate = gate
        self._handle = handle
        handle.output.pipe(self.output)

        try:
            await handle.spawn()
        except ProcessSpawnError as e:
            gate.cancel()
            await self.die(f"Error spawning process: {error_text(e)}")
        gate.mark_spawned()

        await asyncio.wait({gate.outcome, handle.ended}, return_when=asyncio.FIRST_COMPLETED)
        if self._abandoned():
            gate.cancel()
            await never()
        if gate.outcome.done() and not gate.outcome.cancelled() and gate.outcome.exception():
            await self.die(str(gate.outcome.exception()))
        if not gate.is_ready:
            gate.cancel()
            if self._has_been_ready:
                return False
            await self.die("Crashed before becoming ready")
        self._has_been_ready = True
        return True

    def _on_crash(self, handle: ProcessHandle):
        if self._stop_result is not None:
            self._track(self.die(str(InternalError("Not expecting a crash after stopping"))))
            return

        self.logger.info(f"Service '{self.id}' crashed")
        self.state = ServiceState.CRASHED
        # Cancelling an unready gate freezes the classification
        if not self._gate.is_ready:
            self._gate.cancel()
        is_ready = self.has_been_ready
        self._has_been_ready = is_ready

        crash = Crash(date=datetime.now(), log_tail=list(handle.log_tail), exit_code=handle.exit_code)
        self.crashes.append(crash)
        if crash.log_tail:
            self.logger.debug(f"Last output of '{self.id}':\n" + "\n".join(crash.log_tail))

        # A crash before the first readiness is escalated by _run_process
        if is_ready:
            ctx = CrashContext(is_service_ready=True, crash=crash, crashes=tuple(self.crashes))
            self._track(self._handle_crash(ctx))

    async def _handle_crash(self, ctx: CrashContext):
        if self._abandoned():
            return
        delay = asyncio.ensure_future(asyncio.sleep(self.config.minimum_restart_delay))
        try:
            result = self.config.on_crash(ctx)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            delay.cancel()
            await self.die(f"Error from on_crash function: {error_text(e)}")

        if self._abandoned():
            delay.cancel()
            return
        self.state = ServiceState.RESTART_DELAY
        await delay
        if self._abandoned():
            return

        self.logger.info(f"Restarting service '{self.id}'")
        self.state = ServiceState.STARTING
        if await self._run_process():
            self.state = ServiceState.STARTED
            self.logger.info(f"Restarted service '{self.id}'")

    def _track(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(self._report_failure)
        return task

    def _report_failure(self, task: asyncio.Task):
        if task.cancelled() or task.exception() is None:
            return
        message = f"Unexpected error in service task: {error_text(task.exception())}"
        self._track(self.die(str(InternalError(message))))
