"""
Line streams for service output.

A LineStream fans text lines out to any number of async subscribers and to
piped downstream streams. Each service owns one stream that outlives its
processes; each process handle owns one that closes when the process ends.
"""

import asyncio

_EOF = object()


class LineStream:
    """A broadcast stream of text lines."""

    def __init__(self):
        self._queues: list[asyncio.Queue] = []
        self._targets: list["LineStream"] = []
        self.closed = False

    def write(self, line: str):
        """Deliver a line to every subscriber and piped target. Dropped once closed."""
        if self.closed:
            return
        for queue in list(self._queues):
            queue.put_nowait(line)
        for target in self._targets:
            target.write(line)

    def pipe(self, target: "LineStream") -> "LineStream":
        """Forward future writes to target. Closing this stream leaves target open."""
        self._targets.append(target)
        return target

    def close(self):
        """End every subscription."""
        if self.closed:
            return
        self.closed = True
        for queue in list(self._queues):
            queue.put_nowait(_EOF)

    def subscribe(self) -> "LineSubscription":
        """Subscribe to lines written from now on."""
        return LineSubscription(self)

    def _attach(self, queue: asyncio.Queue):
        self._queues.append(queue)
        if self.closed:
            queue.put_nowait(_EOF)

    def _detach(self, queue: asyncio.Queue):
        if queue in self._queues:
            self._queues.remove(queue)


class LineSubscription:
    """Async iterator over the lines of a LineStream, registered on creation."""

    def __init__(self, stream: LineStream):
        self._stream = stream
        self._queue: asyncio.Queue = asyncio.Queue()
        self._done = False
        stream._attach(self._queue)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        if self._done:
            raise StopAsyncIteration
        line = await self._queue.get()
        if line is _EOF:
            self.close()
            raise StopAsyncIteration
        return line

    def close(self):
        """Stop receiving lines."""
        self._done = True
        self._stream._detach(self._queue)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()
