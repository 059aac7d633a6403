"""Logging bootstrap: structlog over stdlib logging, written to stderr.

stdout stays free for the sandboxed command, whose output the host may be
piping through.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, MutableMapping

import structlog


ENV_FLAG = "--env"
MASK = "<redacted>"

_configured = False


def scrub_env_args(_logger: Any, _method: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """Mask the value after every ``--env`` in list-valued event fields.

    Only ``KEY=VALUE`` tokens are touched, and only the part after the first
    ``=`` is replaced, so variable names remain visible in the log.
    """
    for key, value in list(event_dict.items()):
        if not isinstance(value, (list, tuple)) or ENV_FLAG not in value:
            continue
        masked = list(value)
        for index in range(len(masked) - 1):
            following = masked[index + 1]
            if masked[index] == ENV_FLAG and isinstance(following, str) and "=" in following:
                name = following.split("=", 1)[0]
                masked[index + 1] = f"{name}={MASK}"
        event_dict[key] = masked
    return event_dict


def configure_logging(level: str = "INFO", json_logs: bool = False, *, force: bool = False) -> bool:
    """Configure stdlib logging and structlog.

    Runs once per process unless ``force`` is set.

    Returns:
        True if this call (re)configured logging.
    """
    global _configured
    if _configured and not force:
        return False

    log_level = logging.getLevelName(str(level or "INFO").upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    logging.basicConfig(level=log_level, format="%(message)s", stream=sys.stderr, force=force)

    renderer: Any = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            scrub_env_args,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=not force,
    )

    _configured = True
    return True
