"""
JSON logging for the simulator services.

Every record is one JSON line. Records emitted by a session actor carry the
`session_id` (and usually the `sale_id`) of the session they belong to, so a
single sale can be followed across the host, the viewer endpoints and the
backend proxies.
"""

import logging
import sys
from collections.abc import MutableMapping
from typing import Any

from pythonjsonlogger import jsonlogger

PACKAGE_LOGGERS = ("pos_sim", "pos_sim_api")


def _json_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"levelname": "level", "name": "logger", "asctime": "timestamp"},
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
    )
    return handler


def configure_logging(app_name: str, log_level: str = "INFO") -> logging.Logger:
    """
    Send the service logger and the package loggers to stdout as JSON.

    Calling it again only updates the level; handlers are attached once.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    service_logger = logging.getLogger(app_name)
    targets = [service_logger, *(logging.getLogger(name) for name in PACKAGE_LOGGERS)]
    for target in targets:
        target.setLevel(level)

    if service_logger.handlers:
        return service_logger

    handler = _json_handler()
    for target in targets:
        target.addHandler(handler)
    return service_logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class SessionLoggerAdapter(logging.LoggerAdapter):
    """Merges the session context into the `extra` of every call."""

    def process(
        self, msg: str, kwargs: MutableMapping[str, Any]
    ) -> tuple[str, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


def session_logger(name: str, session_id: str, **context: Any) -> SessionLoggerAdapter:
    """Logger that stamps every record with the session it belongs to."""
    return SessionLoggerAdapter(get_logger(name), {"session_id": session_id, **context})
