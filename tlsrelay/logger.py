"""
tlsrelay.logger
~~~~~~~~~~~~~~~
JSON-lines connection log with daily rotation.  Purely an observer: a
failure in here must never reach a relayed connection.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

_ISO = "%Y-%m-%dT%H:%M:%SZ"

# expected TLS drops would otherwise be reported by asyncio itself
logging.getLogger("asyncio").setLevel(logging.ERROR)


def _now() -> str:  # RFC-3339 without microseconds
    return datetime.now(tz=timezone.utc).strftime(_ISO)


def _child_name(path: Path) -> str:
    # dots would nest loggers
    return path.as_posix().strip("/").replace(".", "_")


class _JSONFormatter(logging.Formatter):
    def format(self, record):  # type: ignore[override]
        if isinstance(record.msg, dict):
            return json.dumps(record.msg, separators=(",", ":"), default=str)
        return super().format(record)


class RelayLogger:
    """
    Connection events for one server.  Without *basename* events go to the
    shared ``tlsrelay`` logger and whatever handlers the application put
    there; with one, they also land in ``<basename>.jsonl`` through a
    handler owned by this instance.
    """

    def __init__(self, basename: Optional[str | Path] = None):
        root = logging.getLogger("tlsrelay")
        root.setLevel(logging.INFO)
        root.propagate = False
        if not root.handlers:
            root.addHandler(logging.NullHandler())

        self._handler: Optional[logging.Handler] = None
        if basename is None:
            self.log = root
            return

        jsonl_file = Path(basename).with_suffix(".jsonl").resolve()
        # one child per file; propagates to the shared logger
        self.log = root.getChild(_child_name(jsonl_file))
        if any(getattr(h, "baseFilename", None) == str(jsonl_file) for h in self.log.handlers):
            return

        h = logging.handlers.TimedRotatingFileHandler(
            jsonl_file, when="midnight", backupCount=7, encoding="utf-8"
        )
        h.setFormatter(_JSONFormatter())
        self.log.addHandler(h)
        self._handler = h

    def close(self) -> None:
        """Detach and close the file handler this instance added, if any."""
        if self._handler is not None:
            self.log.removeHandler(self._handler)
            self._handler.close()
            self._handler = None

    def _emit(self, level: int, event: Dict[str, Any]) -> None:
        try:
            self.log.log(level, {"ts": _now(), **event})
        except Exception:  # noqa: BLE001
            pass

    def listen(self, address: str, destination: str) -> None:
        self._emit(logging.INFO, {"event": "listen", "addr": address, "dest": destination})

    def accept(self, ip: str) -> None:
        self._emit(logging.INFO, {"event": "accept", "ip": ip})

    def drop(self, ip: str, target: str, state: str, error: BaseException) -> None:
        self._emit(
            logging.WARNING,
            {
                "event": "drop",
                "ip": ip,
                "target": target,
                "state": state,
                "error": type(error).__name__,
                "reason": str(error),
            },
        )

    def end(
        self,
        ip: str,
        target: str,
        bytes_up: int,
        bytes_down: int,
        first_finished: Optional[str],
        duration_ms: int,
        error: Optional[BaseException] = None,
    ) -> None:
        event: Dict[str, Any] = {
            "event": "end",
            "ip": ip,
            "target": target,
            "up": bytes_up,
            "down": bytes_down,
            "first": first_finished,
            "ms": duration_ms,
        }
        if error is not None:
            event["reason"] = str(error)
        self._emit(logging.INFO, event)

    def teardown(self, address: str) -> None:
        self._emit(logging.INFO, {"event": "teardown", "addr": address})
