"""Logging configuration with Betterstack support.

Several instances usually share one device (and one log directory), so every
record is tagged with the short instance id of the process that wrote it.
"""
import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import Dict
from logtail import LogtailHandler

from warranty_sync import settings

LOG_FORMAT = "%(asctime)s - [%(instance)s] %(name)s - %(levelname)s - %(message)s"

# Third-party loggers that drown sync output at DEBUG
QUIET_LOGGERS = {"urllib3": "WARNING", "logtail": "WARNING"}


class InstanceFilter(logging.Filter):
    """Stamp records with the owning instance id."""

    def __init__(self, instance_id: str):
        super().__init__()
        self.instance_id = instance_id[:8]

    def filter(self, record: logging.LogRecord) -> bool:
        record.instance = self.instance_id
        return True


def parse_levels(value: str) -> Dict[str, str]:
    """``"urllib3=ERROR,warranty_sync=DEBUG"`` -> ``{"urllib3": "ERROR", ...}``. Raises ValueError on bad entries."""
    levels = {}
    for entry in filter(None, (part.strip() for part in value.split(","))):
        name, sep, level = entry.partition("=")
        level = level.strip().upper()
        if not sep or not name.strip() or not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Bad logger level override: {entry!r}")
        levels[name.strip()] = level
    return levels


def _attach(root_logger: logging.Logger, handler: logging.Handler, level: int, instance_filter: InstanceFilter):
    handler.setLevel(level)
    handler.addFilter(instance_filter)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(handler)


def _betterstack_handler() -> logging.Handler:
    handler_kwargs = {"source_token": settings.BETTERSTACK_SOURCE_TOKEN}
    if settings.BETTERSTACK_INGEST_HOST:
        handler_kwargs["host"] = settings.BETTERSTACK_INGEST_HOST
    return LogtailHandler(**handler_kwargs)


def setup_logging(level: str = None) -> logging.Logger:
    level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)
    instance_filter = InstanceFilter(settings.INSTANCE_ID)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = []

    _attach(root_logger, logging.StreamHandler(sys.stdout), level, instance_filter)

    # One rotating file shared by every local instance; the instance tag tells them apart
    if settings.LOG_FILE:
        file_handler = RotatingFileHandler(
            settings.LOGS_DIR / settings.LOG_FILE,
            maxBytes=settings.LOG_FILE_MAX_BYTES,
            backupCount=settings.LOG_FILE_BACKUPS,
        )
        _attach(root_logger, file_handler, logging.INFO, instance_filter)

    if settings.BETTERSTACK_SOURCE_TOKEN:
        try:
            _attach(root_logger, _betterstack_handler(), logging.DEBUG, instance_filter)
            root_logger.info(f"BetterStack logging enabled (host: {settings.BETTERSTACK_INGEST_HOST or 'default'})")
        except Exception as e:
            root_logger.warning(f"Failed to initialize BetterStack logging: {e}")

    overrides = dict(QUIET_LOGGERS)
    try:
        overrides.update(parse_levels(settings.LOG_LEVELS))
    except ValueError as e:
        root_logger.warning(f"Ignoring LOG_LEVELS: {e}")
    for name, name_level in overrides.items():
        logging.getLogger(name).setLevel(name_level)

    return logging.getLogger("warranty_sync")


logger = setup_logging()
