"""
tlsrelay.tunnel
~~~~~~~~~~~~~~~
The plaintext half of the exchange: one CONNECT line in, one canned
"200 Connection established" block out.  The requested target is only
ever reported, never dialed.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional

from .errors import ProtocolError

CRLF = b"\r\n"
CONNECT_TOKEN = b"CONNECT"
_TIMESTAMP = "%Y-%m-%d %H:%M:%S"


async def read_connect_line(
    reader: asyncio.StreamReader, timeout: Optional[float] = None
) -> str:
    """Consume exactly one line and insist it is a CONNECT request."""
    try:
        line = await asyncio.wait_for(reader.readline(), timeout)
    except ValueError as e:  # longer than the reader limit
        raise ProtocolError("request line too long") from e
    except OSError as e:
        raise ProtocolError(f"cannot read request line: {e}") from e

    if not line:
        raise ProtocolError("connection closed before request line")
    if not line.startswith(CONNECT_TOKEN):
        raise ProtocolError(f"not a CONNECT request: {line[:32]!r}")
    return line.decode("latin-1").strip()


def connect_target(line: str) -> str:
    """``CONNECT host:443 HTTP/1.1`` -> ``host:443`` (``-`` if absent)."""
    parts = line.split()
    return parts[1] if len(parts) > 1 else "-"


def established_response(proxy_agent: str, now: Optional[datetime] = None) -> bytes:
    now = now or datetime.now()
    head = (
        "HTTP/1.1 200 Connection established\r\n"
        f"Timestamp: {now.strftime(_TIMESTAMP)}\r\n"
        f"Proxy-agent: {proxy_agent}\r\n"
        "\r\n"
    )
    return head.encode("latin-1")


async def send_established(writer: asyncio.StreamWriter, proxy_agent: str) -> None:
    # The ClientHello must not land in the plaintext reader; reading
    # resumes once the TLS layer owns the transport.
    writer.transport.pause_reading()
    writer.write(established_response(proxy_agent))
    try:
        await writer.drain()
    except OSError as e:
        raise ProtocolError(f"cannot write tunnel response: {e}") from e
