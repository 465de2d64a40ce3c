"""
davgate.logger
~~~~~~~~~~~~~~
Human-readable console output *and* JSON-lines logs with daily rotation.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

_ISO = "%Y-%m-%dT%H:%M:%SZ"

LOGGER_NAME = "davgate"


def _now() -> str:  # RFC-3339 without microseconds
    return datetime.now(tz=timezone.utc).strftime(_ISO)


def _event(record: logging.LogRecord) -> Dict[str, Any]:
    if isinstance(record.msg, dict):
        return record.msg
    return {"event": "log", "ts": _now(), "msg": record.getMessage()}


class _PlainFormatter(logging.Formatter):
    """ e.g. 2026-10-19T15:07:02Z WARNING auth_fail bob 127.0.0.1 """

    def format(self, record):  # type: ignore[override]
        if not isinstance(record.msg, dict) or record.exc_info:
            return super().format(record)
        d = record.msg
        parts = [d.get("ts", _now()), record.levelname, d.get("event", "-")]
        parts.extend(
            str(v) for k, v in d.items() if k not in ("ts", "event")
        )
        return " ".join(parts)


class _JSONFormatter(logging.Formatter):
    def format(self, record):  # type: ignore[override]
        d = dict(_event(record), level=record.levelname)
        if record.exc_info:
            d["exc"] = self.formatException(record.exc_info)
        return json.dumps(d, separators=(",", ":"))


class GateLogger:
    def __init__(self, basename: str | Path | None = None, level: str | int = logging.INFO):
        root = logging.getLogger(LOGGER_NAME)
        root.setLevel(level)
        root.propagate = False  # don't spam the root logger

        if not root.handlers:
            console = logging.StreamHandler()
            console.setFormatter(_PlainFormatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
            root.addHandler(console)

            if basename is not None:
                basename = Path(basename).with_suffix("")  # davgate
                jsonl_file = basename.with_suffix(".jsonl")

                # json lines
                h = logging.handlers.TimedRotatingFileHandler(
                    jsonl_file, when="midnight", backupCount=7, encoding="utf-8"
                )
                h.setFormatter(_JSONFormatter())
                root.addHandler(h)

        self.log = root

    def listening(self, bind: str, tls: bool) -> None:
        self.log.info({"event": "listening", "ts": _now(), "bind": bind, "tls": tls})

    def request(self, user: str, ip: str, method: str, path: str) -> None:
        self.log.debug(
            {
                "event": "request",
                "ts": _now(),
                "user": user,
                "ip": ip,
                "method": method,
                "path": path,
            }
        )

    def auth_fail(self, ip: str, supplied_user: Optional[str]) -> None:
        self.log.warning(
            {
                "event": "auth_fail",
                "ts": _now(),
                "ip": ip,
                "user": supplied_user or "-",
            }
        )

    def denied(self, user: str, method: str, path: str, reason: str) -> None:
        self.log.info(
            {
                "event": "denied",
                "ts": _now(),
                "user": user,
                "method": method,
                "path": path,
                "reason": reason,
            }
        )

    def engine(self, user: str, root: str) -> None:
        self.log.info({"event": "engine", "ts": _now(), "user": user, "root": root})

    def failure(self, method: str, path: str) -> None:
        self.log.exception({"event": "failure", "ts": _now(), "method": method, "path": path})
