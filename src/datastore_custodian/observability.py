"""Logging setup for datastore-custodian.

Call sites obtain a logger with ``get_logger(__name__)`` and pass structured
fields as keyword arguments::

    logger.info("Scheduled job dispatched", job=job.name, tick=tick.isoformat())

loguru captures those keyword arguments into the record's ``extra`` dict, so
they appear as fields when JSON logging is enabled. Messages must not contain
literal braces because loguru formats them with the same keyword arguments.
"""

from __future__ import annotations

import sys

from loguru import logger as _root_logger

_CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DDTHH:mm:ss.SSSZ}</green> | <level>{level: <8}</level> | "
    "<cyan>{extra[logger_name]}</cyan> | {message} | {extra}"
)


def _ensure_logger_name(record: dict) -> bool:  # type: ignore[type-arg]
    record["extra"].setdefault("logger_name", record["name"])
    return True


def configure_logging(level: str = "INFO", json_logs: bool = True) -> None:
    """Replace loguru's default sink with the service sink.

    Args:
        level: Minimum log level name.
        json_logs: Serialize records as JSON lines when True, otherwise use a
            human-readable console format.
    """
    _root_logger.remove()
    if json_logs:
        _root_logger.add(
            sys.stderr,
            level=level.upper(),
            serialize=True,
            backtrace=False,
            diagnose=False,
            filter=_ensure_logger_name,
        )
    else:
        _root_logger.add(
            sys.stderr,
            level=level.upper(),
            format=_CONSOLE_FORMAT,
            backtrace=False,
            diagnose=False,
            filter=_ensure_logger_name,
        )


def get_logger(name: str):  # type: ignore[no-untyped-def]
    """Return a loguru logger bound to a module name.

    Args:
        name: Usually ``__name__`` of the calling module.

    Returns:
        A bound loguru logger.
    """
    return _root_logger.bind(logger_name=name)
