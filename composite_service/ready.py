"""
Readiness gate for one service start attempt.

Turns a user-supplied ready function into a single memoized outcome. The
ready function is called as soon as the gate is created, so it can watch the
service's output from the first line; readiness additionally requires the
process to have spawned.
"""

import asyncio
import inspect
from typing import Optional

from .errors import ReadyFunctionError, ReadyTimeoutError, error_text
from .models import ReadyContext, ReadyFunction


class ReadinessGate:
    """Memoized readiness of one start attempt."""

    def __init__(self, ready: ReadyFunction, ctx: ReadyContext, timeout: Optional[float] = None):
        self.is_ready = False
        self._spawned: asyncio.Future = asyncio.get_running_loop().create_future()
        self._check = asyncio.ensure_future(self._call(ready, ctx))
        self.outcome: asyncio.Task = asyncio.ensure_future(self._wait(timeout))

    @staticmethod
    async def _call(ready: ReadyFunction, ctx: ReadyContext):
        result = ready(ctx)
        if inspect.isawaitable(result):
            await result

    async def _wait(self, timeout: Optional[float]):
        await self._spawned
        try:
            await asyncio.wait_for(self._check, timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError) and self._check.cancelled():
                raise ReadyTimeoutError(f"Timed out after {timeout} seconds waiting for ready") from None
            raise ReadyFunctionError(f"Error from ready function: {error_text(e)}") from e
        self.is_ready = True

    def mark_spawned(self):
        """Record that the process has spawned."""
        if not self._spawned.done():
            self._spawned.set_result(None)

    def cancel(self):
        """Abandon this attempt. is_ready can no longer become true."""
        for task in (self.outcome, self._check):
            if not task.done():
                task.cancel()
            elif not task.cancelled():
                # Mark any error as retrieved
                task.exception()
