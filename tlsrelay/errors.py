"""
tlsrelay.errors
~~~~~~~~~~~~~~~
Exception taxonomy.  Only BindError and ConfigError ever reach a caller;
everything else is contained by the connection handler and recorded on
the connection's result.
"""

from __future__ import annotations


class RelayProxyError(Exception):
    """Base class for every error raised by tlsrelay."""


class ConfigError(RelayProxyError):
    pass


class BindError(RelayProxyError):
    """Listener could not be started (address in use, bad certificate...)."""


class ProtocolError(RelayProxyError):
    """First line missing or not a CONNECT request."""


class HandshakeError(RelayProxyError):
    """Client-side TLS handshake failed or timed out."""


class DialError(RelayProxyError):
    """Upstream unreachable, or its TLS handshake failed."""


class RelayError(RelayProxyError):
    """I/O failure while forwarding one direction."""
