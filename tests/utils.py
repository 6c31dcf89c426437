import asyncio
import contextlib
import socket
import ssl
from typing import List, Optional, Tuple

from tlsrelay.core import ConnectionResult, ProxyServer, RelayOptions
from tlsrelay.logger import RelayLogger
from tlsrelay.tls import ServerCertificate

CONNECT_LINE = b"CONNECT example.com:443 HTTP/1.1\r\n\r\n"
TIMEOUT = 5.0


async def echo_handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    try:
        while True:
            data = await reader.read(65536)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    except (ConnectionError, ssl.SSLError):
        pass
    finally:
        writer.close()


@contextlib.asynccontextmanager
async def upstream_server(
    cert: ServerCertificate,
    handler=echo_handler,
    sni_seen: Optional[List[Optional[str]]] = None,
):
    """
    TLS server on an ephemeral port standing in for the destination.  The
    server name of each handshake is appended to *sni_seen*, None when the
    client sent none.
    """
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.load_cert_chain(cert.certfile, cert.keyfile)
    if sni_seen is not None:
        ctx.sni_callback = lambda sslobj, name, c: sni_seen.append(name)
    server = await asyncio.start_server(handler, "127.0.0.1", 0, ssl=ctx)
    try:
        yield server.sockets[0].getsockname()[1]
    finally:
        server.close()


@contextlib.asynccontextmanager
async def running_relay(
    cert: ServerCertificate,
    destination_port: int,
    destination_host: str = "127.0.0.1",
    options: Optional[RelayOptions] = None,
    logger: Optional[RelayLogger] = None,
):
    results: List[ConnectionResult] = []
    server = await ProxyServer.create(
        "127.0.0.1",
        0,
        destination_host,
        cert,
        destination_port=destination_port,
        options=options or RelayOptions(proxy_agent="test-agent", handshake_timeout=TIMEOUT),
        logger=logger,
        on_closed=results.append,
    )
    try:
        yield server, results
    finally:
        server.teardown()


def unused_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def client_context(cert: ServerCertificate) -> ssl.SSLContext:
    ctx = ssl.create_default_context(cafile=str(cert.certfile))
    ctx.verify_flags &= ~ssl.VERIFY_X509_STRICT
    return ctx


async def open_tunnel(
    address: Tuple[str, int], connect_line: bytes = CONNECT_LINE
) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter, bytes]:
    """Plain connection through the CONNECT exchange; returns the response head."""
    reader, writer = await asyncio.open_connection(*address)
    writer.write(connect_line)
    await writer.drain()
    head = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), TIMEOUT)
    return reader, writer, head


async def open_tls_tunnel(
    address: Tuple[str, int],
    cert: ServerCertificate,
    connect_line: bytes = CONNECT_LINE,
    ctx: Optional[ssl.SSLContext] = None,
) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    reader, writer, _ = await open_tunnel(address, connect_line)
    await asyncio.wait_for(
        writer.start_tls(ctx or client_context(cert), server_hostname="localhost"), TIMEOUT
    )
    return reader, writer


async def read_until_closed(reader: asyncio.StreamReader) -> bytes:
    """Everything up to EOF; an abrupt reset counts as closed."""
    chunks = []
    try:
        while True:
            data = await asyncio.wait_for(reader.read(65536), TIMEOUT)
            if not data:
                break
            chunks.append(data)
    except (ConnectionError, ssl.SSLError):
        pass
    return b"".join(chunks)


async def next_result(results: List[ConnectionResult], count: int = 1) -> ConnectionResult:
    """Wait until *count* connections have been reported, return the last."""
    async def _wait():
        while len(results) < count:
            await asyncio.sleep(0.01)
    await asyncio.wait_for(_wait(), TIMEOUT)
    return results[count - 1]


async def close(writer: asyncio.StreamWriter) -> None:
    writer.close()
    with contextlib.suppress(ConnectionError, ssl.SSLError, TimeoutError):
        await asyncio.wait_for(writer.wait_closed(), TIMEOUT)
