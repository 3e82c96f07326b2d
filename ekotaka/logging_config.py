"""Logging setup: readable console lines plus JSON files for the log shipper."""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from pythonjsonlogger import jsonlogger

from ekotaka.config import settings

SERVICE_NAME = "ekotaka"

# Marketplace identifiers lifted to top-level JSON keys when bound or passed in extra
CONTEXT_FIELDS = ("collector_id", "brand_id", "pickup_id", "order_id", "transaction_id", "conversation_id")

# Chatty third-party loggers and the floor they are held to
QUIET_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "openai": logging.WARNING,
    "PIL": logging.INFO,
    "aiosqlite": logging.INFO,
}


class MarketplaceJsonFormatter(jsonlogger.JsonFormatter):
    """One JSON object per record, tagged with the service and any bound ids."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.fromtimestamp(record.created, timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = SERVICE_NAME
        log_record["source"] = f"{record.module}.{record.funcName}:{record.lineno}"
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_record[key] = value


def setup_logging(
    log_dir: Union[str, Path, None] = None,
    level: Optional[str] = None,
) -> logging.Logger:
    """
    Configure the root logger.

    Writes ``ekotaka.log`` (everything) and ``ekotaka-errors.log`` (ERROR and
    up) under ``<log_dir>/logs``; ``log_dir`` defaults to ``settings.log_dir``
    and then the working directory.
    """
    base = log_dir or settings.log_dir
    logs_dir = (Path(base) if base else Path.cwd()) / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, (level or settings.log_level).upper(), logging.INFO))
    root_logger.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s"))
    root_logger.addHandler(console)

    json_formatter = MarketplaceJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    for filename, handler_level in (("ekotaka.log", logging.DEBUG), ("ekotaka-errors.log", logging.ERROR)):
        handler = logging.FileHandler(logs_dir / filename, encoding="utf-8")
        handler.setLevel(handler_level)
        handler.setFormatter(json_formatter)
        root_logger.addHandler(handler)

    for name, floor in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(floor)
    if not settings.database_echo:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return root_logger


class ContextLogger(logging.LoggerAdapter):
    """Adapter that stamps bound marketplace ids onto every record."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs

    def bind(self, **context) -> "ContextLogger":
        return ContextLogger(self.logger, {**self.extra, **context})


def get_logger(name: str, **context) -> ContextLogger:
    """Logger for ``name`` carrying ids such as ``collector_id`` or ``pickup_id``."""
    return ContextLogger(logging.getLogger(name), context)
