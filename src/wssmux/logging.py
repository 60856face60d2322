"""Structured logging for wssmux.

Every command logs to stdout through structlog. Commands that change the
system also append to the persistent install log, one timestamped line per
event, so an operator can reconstruct what an install or removal did.
"""

import logging
import sys
from pathlib import Path

import structlog
from structlog.typing import Processor

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
INSTALL_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _processors(json_format: bool) -> list[Processor]:
    renderer: Processor
    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        # The service's stdout is appended to a file by systemd
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    return [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt=TIMESTAMP_FORMAT),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ]


def _install_log_handler(log_file: Path, level: int) -> logging.Handler | None:
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file, encoding="utf-8")
    except OSError:
        return None
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(INSTALL_LOG_FORMAT, datefmt=TIMESTAMP_FORMAT))
    return handler


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: Path | str | None = None,
) -> None:
    """Configure logging for one wssmux command.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Render events as JSON instead of console lines
        log_file: Install log to append to; its directory is created. When it
            cannot be opened, logging continues on stdout only.
    """
    log_level = getattr(logging, level.upper())

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(log_level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(console_handler)

    install_log = None
    if log_file is not None:
        install_log = _install_log_handler(Path(log_file), log_level)
        if install_log is not None:
            root_logger.addHandler(install_log)

    structlog.configure(
        processors=_processors(json_format),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_file is not None and install_log is None:
        get_logger(__name__).warning("Install log unavailable, logging to stdout only", path=str(log_file))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Logger bound to ``name`` (usually the module's ``__name__``)."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]
