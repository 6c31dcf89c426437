"""
tlsrelay.relay
~~~~~~~~~~~~~~
Byte pump between the two TLS sessions.  Whichever direction finishes
first ends the pair: the upstream session is closed and the other copy
task is cancelled.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Optional

from .errors import RelayError

BUFFER = 65_536

CLIENT_TO_UPSTREAM = "client->upstream"
UPSTREAM_TO_CLIENT = "upstream->client"


@dataclass
class RelayStats:
    bytes_up: int = 0  # client -> upstream
    bytes_down: int = 0  # upstream -> client
    first_finished: Optional[str] = None
    error: Optional[RelayError] = None
    _last_activity: float = field(default=0.0, repr=False)


async def _pipe_stream(
    direction: str,
    src: asyncio.StreamReader,
    dst: asyncio.StreamWriter,
    stats: RelayStats,
    idle_timeout: Optional[float],
    buffer: int,
) -> None:
    loop = asyncio.get_running_loop()
    try:
        while True:
            try:
                chunk = await asyncio.wait_for(src.read(buffer), idle_timeout)
            except TimeoutError:
                # the other direction may still be busy
                if loop.time() - stats._last_activity < idle_timeout:
                    continue
                raise RelayError(f"{direction}: idle for {idle_timeout}s") from None
            if not chunk:
                break
            dst.write(chunk)
            await dst.drain()
            stats._last_activity = loop.time()
            if direction == CLIENT_TO_UPSTREAM:
                stats.bytes_up += len(chunk)
            else:
                stats.bytes_down += len(chunk)
    except RelayError as e:
        stats.error = stats.error or e
    except OSError as e:
        stats.error = stats.error or RelayError(f"{direction}: {e}")


async def relay(
    client: tuple[asyncio.StreamReader, asyncio.StreamWriter],
    upstream: tuple[asyncio.StreamReader, asyncio.StreamWriter],
    idle_timeout: Optional[float] = None,
    buffer: int = BUFFER,
) -> RelayStats:
    """
    Copy bytes both ways until either direction ends.

    Copy errors are recorded on the returned stats, never raised.  The
    caller still owns the client streams and must close them.
    """
    client_reader, client_writer = client
    upstream_reader, upstream_writer = upstream
    stats = RelayStats(_last_activity=asyncio.get_running_loop().time())

    tasks = {
        asyncio.create_task(
            _pipe_stream(CLIENT_TO_UPSTREAM, client_reader, upstream_writer, stats, idle_timeout, buffer),
            name=CLIENT_TO_UPSTREAM,
        ),
        asyncio.create_task(
            _pipe_stream(UPSTREAM_TO_CLIENT, upstream_reader, client_writer, stats, idle_timeout, buffer),
            name=UPSTREAM_TO_CLIENT,
        ),
    }
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        stats.first_finished = next(iter(done)).get_name()
    finally:
        for t in tasks:
            t.cancel()
        await _close_quietly(upstream_writer)
        await asyncio.gather(*tasks, return_exceptions=True)
    return stats


async def _close_quietly(writer: asyncio.StreamWriter) -> None:
    try:
        writer.close()
        await writer.wait_closed()
    except OSError:
        pass
