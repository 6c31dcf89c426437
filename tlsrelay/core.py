"""
tlsrelay.core
~~~~~~~~~~~~~
Single-destination TLS-terminating CONNECT relay.

Every accepted connection runs CONNECT line -> 200 response -> server TLS
handshake -> upstream dial -> relay on its own task.  Failures at any step
close that connection silently; the outcome is reported through the
logger and the optional ``on_closed`` hook.
"""

from __future__ import annotations

import asyncio
import enum
import ssl
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from .config import Config
from .errors import BindError, RelayProxyError
from .logger import RelayLogger
from .relay import BUFFER, relay
from .tls import (
    ServerCertificate,
    build_server_context,
    build_upstream_context,
    dial_upstream,
    terminate_tls,
)
from .tunnel import connect_target, read_connect_line, send_established

HTTPS_PORT = 443


def run_relay(config: Config) -> None:
    async def _serve() -> None:
        logger = RelayLogger(config.log_path)
        server = await ProxyServer.create(
            config.listen_host,
            config.listen_port,
            config.destination_host,
            ServerCertificate(config.cert_path, config.key_path, config.key_password),
            destination_port=config.destination_port,
            options=RelayOptions.from_config(config),
            logger=logger,
        )
        host, port = server.bound_address
        print(f"▸ Relay listening on {host}:{port} -> "
              f"{config.destination_host}:{config.destination_port}")
        try:
            async with server:
                await server.serve_forever()
        finally:
            logger.close()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        print("\n▸ Relay shut down.")


class ConnectionState(enum.Enum):
    """Stages of one connection.  A reported result is always closed."""

    ACCEPTED = "accepted"
    AWAITING_CONNECT_LINE = "awaiting_connect_line"
    TUNNEL_ESTABLISHED = "tunnel_established"
    SERVER_TLS_HANDSHAKING = "server_tls_handshaking"
    DIALING_UPSTREAM = "dialing_upstream"
    RELAYING = "relaying"


@dataclass
class RelayOptions:
    """
    Per-server tunables.

    ``insecure_skip_upstream_verify`` accepts whatever certificate the
    destination presents, without chain or hostname checks, and sends no
    SNI unless ``upstream_server_name`` is given.  The relay exists to
    forward to a destination the client cannot verify locally, so this
    stays on unless you explicitly turn it off.

    ``allow_legacy_tls`` lets clients negotiate TLS 1.0/1.1.
    """

    proxy_agent: str = "tlsrelay"
    allow_legacy_tls: bool = False
    insecure_skip_upstream_verify: bool = True
    upstream_ca_file: Optional[str] = None
    upstream_server_name: Optional[str] = None
    handshake_timeout: Optional[float] = 30.0
    idle_timeout: Optional[float] = 300.0
    buffer_size: int = BUFFER

    @classmethod
    def from_config(cls, cfg: Config) -> "RelayOptions":
        return cls(
            proxy_agent=cfg.proxy_agent,
            allow_legacy_tls=cfg.allow_legacy_tls,
            insecure_skip_upstream_verify=cfg.insecure_skip_upstream_verify,
            upstream_ca_file=cfg.upstream_ca_file,
            upstream_server_name=cfg.upstream_server_name,
            handshake_timeout=cfg.handshake_timeout,
            idle_timeout=cfg.idle_timeout,
        )


@dataclass
class ConnectionResult:
    peer: str
    target: str = "-"
    state: ConnectionState = ConnectionState.ACCEPTED  # last state reached before closing
    error: Optional[RelayProxyError] = None
    bytes_up: int = 0
    bytes_down: int = 0
    first_finished: Optional[str] = None
    duration_ms: int = 0


ClosedHook = Callable[[ConnectionResult], None]


class ProxyServer:
    def __init__(
        self,
        destination_host: str,
        destination_port: int,
        server_ctx: ssl.SSLContext,
        upstream_ctx: ssl.SSLContext,
        options: RelayOptions,
        logger: RelayLogger,
        on_closed: Optional[ClosedHook],
    ) -> None:
        self.destination_host = destination_host
        self.destination_port = destination_port
        self.options = options
        self.logger = logger
        self.on_closed = on_closed
        self._server_ctx: Optional[ssl.SSLContext] = server_ctx
        self._upstream_ctx = upstream_ctx
        self._server: Optional[asyncio.Server] = None

    # ------------------------------------------------------------------ #
    # lifecycle
    # ------------------------------------------------------------------ #

    @classmethod
    async def create(
        cls,
        bind_host: str,
        bind_port: int,
        destination_host: str,
        certificate: ServerCertificate,
        *,
        destination_port: int = HTTPS_PORT,
        options: Optional[RelayOptions] = None,
        logger: Optional[RelayLogger] = None,
        on_closed: Optional[ClosedHook] = None,
    ) -> "ProxyServer":
        """
        Bind the listener and start accepting in the background.

        Raises BindError if the certificate or the upstream CA file cannot
        be loaded, or the address cannot be bound.
        """
        options = options or RelayOptions()
        server_ctx = build_server_context(certificate, options.allow_legacy_tls)
        upstream_ctx = build_upstream_context(
            options.insecure_skip_upstream_verify, options.upstream_ca_file
        )
        proxy = cls(
            destination_host,
            destination_port,
            server_ctx,
            upstream_ctx,
            options,
            logger or RelayLogger(),
            on_closed,
        )
        try:
            proxy._server = await asyncio.start_server(
                proxy._handle_client, host=bind_host, port=bind_port
            )
        except OSError as e:
            raise BindError(f"cannot listen on {bind_host}:{bind_port}: {e}") from e

        host, port = proxy.bound_address
        proxy.logger.listen(f"{host}:{port}", f"{destination_host}:{destination_port}")
        return proxy

    @property
    def bound_address(self) -> Tuple[str, int]:
        if self._server is None or not self._server.sockets:
            raise RuntimeError("server is not listening")
        host, port = self._server.sockets[0].getsockname()[:2]
        return host, port

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    def teardown(self) -> None:
        """
        Stop accepting and release the certificate.  Connections already
        in flight are left to finish on their own.
        """
        if self._server is None:
            return
        addr = ", ".join(str(s.getsockname()) for s in self._server.sockets)
        self._server.close()
        self._server = None
        self._server_ctx = None
        self.logger.teardown(addr)

    async def serve_forever(self) -> None:
        if self._server is None:
            raise RuntimeError("server has been torn down")
        try:
            await self._server.serve_forever()
        except asyncio.CancelledError:
            if self._server is not None:
                raise

    async def __aenter__(self) -> "ProxyServer":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.teardown()

    # ------------------------------------------------------------------ #
    # per-connection
    # ------------------------------------------------------------------ #

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        start_ts = time.monotonic()
        peer = writer.get_extra_info("peername")
        result = ConnectionResult(peer=str(peer[0]) if peer else "-")
        ctx = self._server_ctx
        # set while the plaintext streams no longer own the transport
        detached = False
        self.logger.accept(result.peer)

        try:
            result.state = ConnectionState.AWAITING_CONNECT_LINE
            line = await read_connect_line(reader, self.options.handshake_timeout)
            result.target = connect_target(line)
            result.state = ConnectionState.TUNNEL_ESTABLISHED
            await send_established(writer, self.options.proxy_agent)

            result.state = ConnectionState.SERVER_TLS_HANDSHAKING
            detached = True
            reader, writer = await terminate_tls(writer, ctx, self.options.handshake_timeout)
            detached = False

            result.state = ConnectionState.DIALING_UPSTREAM
            upstream = await dial_upstream(
                self.destination_host,
                self.destination_port,
                self._upstream_ctx,
                self.options.upstream_server_name,
                self.options.handshake_timeout,
            )

            result.state = ConnectionState.RELAYING
            stats = await relay(
                (reader, writer),
                upstream,
                idle_timeout=self.options.idle_timeout,
                buffer=self.options.buffer_size,
            )
            result.bytes_up = stats.bytes_up
            result.bytes_down = stats.bytes_down
            result.first_finished = stats.first_finished
            result.error = stats.error

        except RelayProxyError as e:
            result.error = e
        except Exception as e:  # noqa: BLE001
            err = RelayProxyError(f"unexpected {type(e).__name__}: {e}")
            err.__cause__ = e
            result.error = err
        finally:
            if detached:
                # a failed upgrade never reports connection_lost to the
                # plaintext protocol, so there is nothing to wait for
                writer.transport.close()
            else:
                await _close_writer(writer)
            result.duration_ms = int((time.monotonic() - start_ts) * 1000)
            self._report(result)

    def _report(self, result: ConnectionResult) -> None:
        if result.state is ConnectionState.RELAYING:
            self.logger.end(
                result.peer,
                result.target,
                result.bytes_up,
                result.bytes_down,
                result.first_finished,
                result.duration_ms,
                result.error,
            )
        elif result.error is not None:
            self.logger.drop(result.peer, result.target, result.state.value, result.error)

        if self.on_closed is not None:
            try:
                self.on_closed(result)
            except Exception:  # noqa: BLE001
                pass


async def _close_writer(writer: asyncio.StreamWriter) -> None:
    try:
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionResetError, ssl.SSLError):
            pass
    except OSError:
        pass
