"""
tlsrelay.tls
~~~~~~~~~~~~
Both TLS legs of a relayed connection: terminating the client's session
with the caller's certificate, and dialing the fixed destination.
"""

from __future__ import annotations

import asyncio
import ssl
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from .errors import BindError, DialError, HandshakeError

Streams = Tuple[asyncio.StreamReader, asyncio.StreamWriter]


@dataclass(frozen=True, slots=True)
class ServerCertificate:
    """PEM certificate chain presented to clients, plus its private key.

    *keyfile* may be omitted when the key is bundled in *certfile*.
    """

    certfile: str | Path
    keyfile: Optional[str | Path] = None
    password: Optional[str] = None


def build_server_context(cert: ServerCertificate, allow_legacy_tls: bool = False) -> ssl.SSLContext:
    """
    Server-side context for the client leg.  No client certificate is
    requested.

    TLS 1.2 is the floor unless *allow_legacy_tls* is set, in which case
    TLS 1.0 and 1.1 are accepted too and the OpenSSL security level is
    dropped so those versions can negotiate at all.  Only turn it on for
    clients that cannot speak anything newer.
    """
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    if allow_legacy_tls:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", DeprecationWarning)
            ctx.minimum_version = ssl.TLSVersion.TLSv1
        ctx.set_ciphers("DEFAULT:@SECLEVEL=0")
    else:
        ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    ctx.verify_mode = ssl.CERT_NONE

    try:
        ctx.load_cert_chain(
            certfile=cert.certfile,
            keyfile=cert.keyfile,
            password=cert.password,
        )
    except (OSError, ValueError) as e:
        raise BindError(f"cannot load certificate {cert.certfile}: {e}") from e
    return ctx


def build_upstream_context(
    insecure_skip_upstream_verify: bool,
    ca_file: Optional[str] = None,
) -> ssl.SSLContext:
    """
    Client-side context for the destination leg.

    With *insecure_skip_upstream_verify* any certificate the destination
    presents is accepted: no chain and no hostname check.  The relay's own
    client already trusts the relay's certificate in place of the real
    one, so the destination's chain need not match anything local.
    """
    if insecure_skip_upstream_verify:
        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        return ctx
    try:
        return ssl.create_default_context(ssl.Purpose.SERVER_AUTH, cafile=ca_file)
    except (OSError, ValueError) as e:
        raise BindError(f"cannot load upstream CA file {ca_file}: {e}") from e


async def terminate_tls(
    writer: asyncio.StreamWriter,
    ctx: ssl.SSLContext,
    timeout: Optional[float] = None,
) -> Streams:
    """
    Upgrade the accepted plaintext socket to TLS in server mode.

    Returns fresh streams bound to the TLS transport.  Whatever plaintext
    was still buffered in the old reader is left behind with it.
    """
    loop = asyncio.get_running_loop()
    tls_reader = asyncio.StreamReader()
    tls_proto = asyncio.StreamReaderProtocol(tls_reader)

    try:
        transport = await loop.start_tls(
            writer.transport,
            tls_proto,
            ctx,
            server_side=True,
            ssl_handshake_timeout=timeout,
        )
    except OSError as e:  # ssl.SSLError, resets and handshake timeouts alike
        raise HandshakeError(f"client handshake failed: {e}") from e
    if transport is None:
        raise HandshakeError("client handshake failed: transport closed")

    tls_proto.connection_made(transport)
    return tls_reader, asyncio.StreamWriter(transport, tls_proto, tls_reader, loop)


async def dial_upstream(
    host: str,
    port: int,
    ctx: ssl.SSLContext,
    server_name: Optional[str] = None,
    timeout: Optional[float] = None,
) -> Streams:
    """
    Open a TLS session to the destination.

    Without *server_name* no SNI is sent when *ctx* skips hostname checks;
    a verifying context checks against *host* instead.
    """
    if server_name is None:
        server_name = host if ctx.check_hostname else ""
    try:
        return await asyncio.wait_for(
            asyncio.open_connection(
                host,
                port,
                ssl=ctx,
                server_hostname=server_name,
                ssl_handshake_timeout=timeout,
            ),
            timeout,
        )
    except OSError as e:  # covers refused, DNS, TLS and timeout failures
        raise DialError(f"upstream {host}:{port} failed: {e}") from e
