"""
Composite service orchestration.

Runs every configured service as a child process of this one: services start
in dependency order and stop in reverse dependency order. Any fatal error,
and any shutdown signal, goes through die(), which stops everything exactly
once and ends the run with an exit code.
"""

import asyncio
import logging
import signal
import sys
from typing import Callable, NoReturn, Optional

from .errors import ConfigValidationError, InternalError, error_text
from .logs import configure_logging, to_logging_level
from .models import CompositeServiceConfig, validate_config
from .service import ServiceSupervisor, never

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def write_stdout(line: str):
    sys.stdout.write(line + "\n")
    sys.stdout.flush()


class CompositeService:
    """Supervises a graph of services as one unit."""

    def __init__(
        self,
        config,
        output: Optional[Callable[[str], None]] = None,
        handle_signals: bool = True,
    ):
        self.config: CompositeServiceConfig = validate_config(config)
        logging.getLogger("composite_service").setLevel(to_logging_level(self.config.log_level))
        logger.debug(f"config = {self.config!r}")

        self.stopping = False
        self._fatal = False
        self._output = output or write_stdout
        self._handle_signals = handle_signals
        self._exit_code: Optional[asyncio.Future] = None
        self._forwarders: list[asyncio.Task] = []
        self._tasks: set[asyncio.Task] = set()

        self.services: dict[str, ServiceSupervisor] = {
            service_id: ServiceSupervisor(
                service_id,
                service_config,
                die=self.die,
                is_stopping=lambda: self.stopping,
            )
            for service_id, service_config in self.config.services.items()
        }

    async def run(self) -> int:
        """Start all services and run until shutdown. Returns the exit code."""
        loop = asyncio.get_running_loop()
        self._exit_code = loop.create_future()

        if self._handle_signals:
            for sig in SHUTDOWN_SIGNALS:
                loop.add_signal_handler(sig, self.handle_signal, sig)

        label_width = max(len(service_id) for service_id in self.services)
        for service in self.services.values():
            lines = service.output.subscribe()
            self._forwarders.append(asyncio.ensure_future(self._forward_output(service.id, lines, label_width)))

        logger.info("Starting composite service...")
        self._track(self._start_all())

        try:
            return await self._exit_code
        finally:
            if self._handle_signals:
                for sig in SHUTDOWN_SIGNALS:
                    loop.remove_signal_handler(sig)
            for service in self.services.values():
                service.cancel_pending()
            for task in list(self._tasks):
                task.cancel()

    def handle_signal(self, sig: signal.Signals):
        """Shut down in response to an interrupt or termination request."""
        self._shutdown(f"Received shutdown signal '{signal.Signals(sig).name}'", fatal=False)

    async def die(self, message: str) -> NoReturn:
        """Shut everything down because of a fatal error. Never returns."""
        self._shutdown(message, fatal=True)
        await never()

    def _shutdown(self, message: str, fatal: bool):
        # Any fatal error decides the exit code, even one reported mid-shutdown
        if fatal:
            self._fatal = True
        if self.stopping:
            return
        self.stopping = True
        if fatal:
            logger.error(message)
        else:
            logger.info(message)
        logger.info("Stopping composite service...")
        self._track(self._stop_all())

    async def _start_all(self):
        try:
            await asyncio.gather(*(self._start_service(service_id) for service_id in self.services))
        except Exception as e:
            await self.die(str(InternalError(f"Unexpected error while starting: {error_text(e)}")))
        if not self.stopping:
            logger.info("Started composite service")

    async def _start_service(self, service_id: str):
        service = self.services[service_id]
        await asyncio.gather(*(self._start_service(dependency) for dependency in service.config.dependencies))
        # Shutdown began while dependencies were starting
        if self.stopping:
            await never()
        await service.start()

    async def _stop_all(self):
        try:
            await asyncio.gather(*(self._stop_service(service_id) for service_id in self.services))
        except Exception as e:
            self._fatal = True
            logger.error(f"Error while stopping composite service: {error_text(e)}")
        for service in self.services.values():
            service.output.close()
        await asyncio.gather(*self._forwarders)
        logger.info("Stopped composite service")
        self._exit_code.set_result(1 if self._fatal else 0)

    async def _stop_service(self, service_id: str):
        dependents = self.config.dependents(service_id)
        await asyncio.gather(*(self._stop_service(dependent) for dependent in dependents))
        await self.services[service_id].stop()

    async def _forward_output(self, service_id: str, lines, label_width: int):
        async with lines:
            async for line in lines:
                self._output(f"{service_id.ljust(label_width)} | {line}")

    def _track(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


def start_composite_service(config) -> NoReturn:
    """Run a composite service in this process until it shuts down, then exit."""
    try:
        configure_logging()
        service = CompositeService(config)
    except ConfigValidationError as e:
        logger.error(str(e))
        sys.exit(1)
    sys.exit(asyncio.run(service.run()))
