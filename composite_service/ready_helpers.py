"""
Ready helpers.

Building blocks for ready functions, e.g.

    ready=lambda ctx: once_output_line_includes(ctx.output, "Listening on port ")
    ready=lambda ctx: once_tcp_port_used(8000)
"""

import asyncio
import re
from typing import Callable, Union

import httpx

from .stream import LineStream

POLL_INTERVAL = 0.25


async def once_output_line(output: LineStream, test: Callable[[str], bool]):
    """Wait for an output line that passes test."""
    async with output.subscribe() as lines:
        async for line in lines:
            if test(line):
                return
    raise EOFError("Output ended before a matching line")


async def once_output_line_is(output: LineStream, line: str):
    """Wait for an output line equal to line."""
    await once_output_line(output, lambda candidate: candidate == line)


async def once_output_line_includes(output: LineStream, text: str):
    """Wait for an output line containing text."""
    await once_output_line(output, lambda candidate: text in candidate)


async def once_output_line_matches(output: LineStream, pattern: Union[str, re.Pattern]):
    """Wait for an output line matching a regular expression."""
    regex = re.compile(pattern)
    await once_output_line(output, lambda candidate: regex.search(candidate) is not None)


async def once_tcp_port_used(port: Union[int, str], host: str = "localhost", interval: float = POLL_INTERVAL):
    """Wait until host:port accepts TCP connections."""
    port = int(port)
    while True:
        try:
            _, writer = await asyncio.open_connection(host, port)
        except OSError:
            await asyncio.sleep(interval)
            continue
        writer.close()
        await writer.wait_closed()
        return


async def once_http_ok(url: str, interval: float = POLL_INTERVAL, timeout: float = 10.0):
    """Wait until a GET of url returns a 2xx response."""
    async with httpx.AsyncClient() as client:
        while True:
            try:
                response = await client.get(url, timeout=timeout)
                if response.is_success:
                    return
            except httpx.TransportError:
                pass
            await asyncio.sleep(interval)


async def once_timeout(seconds: float):
    """Wait a fixed number of seconds."""
    await asyncio.sleep(seconds)
