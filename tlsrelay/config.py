from dataclasses import dataclass
import os
from typing import Optional

from dotenv import find_dotenv, load_dotenv

from .errors import ConfigError


@dataclass
class Config:
    listen_host: str
    listen_port: int
    destination_host: str
    destination_port: int
    cert_path: str
    key_path: Optional[str]
    key_password: Optional[str]
    proxy_agent: str
    allow_legacy_tls: bool
    insecure_skip_upstream_verify: bool
    upstream_ca_file: Optional[str]
    upstream_server_name: Optional[str]
    handshake_timeout: float
    idle_timeout: Optional[float]
    log_path: str


def _flag(name, default):
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _number(name, default, kind=int):
    raw = os.getenv(name, default)
    try:
        return kind(raw)
    except ValueError:
        raise ConfigError(f"{name}: expected a number, got {raw!r}") from None


def load_config():
    load_dotenv(find_dotenv(usecwd=True), override=True)

    destination = os.getenv("RELAY_DESTINATION", "").strip()
    if not destination:
        raise ConfigError("RELAY_DESTINATION is required")

    idle = _number("RELAY_IDLE_TIMEOUT", "300", float)
    return Config(
        listen_host=os.getenv("RELAY_LISTEN_HOST", "127.0.0.1"),
        listen_port=_number("RELAY_LISTEN_PORT", "443"),
        destination_host=destination,
        destination_port=_number("RELAY_DESTINATION_PORT", "443"),
        cert_path=os.getenv("RELAY_CERT_PATH", "server.pem"),
        key_path=os.getenv("RELAY_KEY_PATH") or None,
        key_password=os.getenv("RELAY_KEY_PASSWORD") or None,
        proxy_agent=os.getenv("RELAY_PROXY_AGENT", "tlsrelay"),
        allow_legacy_tls=_flag("RELAY_ALLOW_LEGACY_TLS", "false"),
        insecure_skip_upstream_verify=_flag("RELAY_INSECURE_SKIP_UPSTREAM_VERIFY", "true"),
        upstream_ca_file=os.getenv("RELAY_UPSTREAM_CA_FILE") or None,
        upstream_server_name=os.getenv("RELAY_UPSTREAM_SERVER_NAME") or None,
        handshake_timeout=_number("RELAY_HANDSHAKE_TIMEOUT", "30", float),
        idle_timeout=idle if idle > 0 else None,
        log_path=os.getenv("RELAY_LOG_PATH", "relay.log"),
    )
