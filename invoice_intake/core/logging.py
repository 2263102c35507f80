import json
import logging
from datetime import UTC, datetime
from typing import Any

SERVICE_NAME = "invoice-intake"

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_STANDARD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime"}

# Capped at WARNING; pdfminer logs once per malformed object.
_NOISY_LOGGERS = ("pdfminer", "pdfplumber", "httpx", "httpcore", "urllib3")


def _extras(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in vars(record).items() if k not in _STANDARD_ATTRS}


class JsonFormatter(logging.Formatter):
    """One JSON object per line: envelope fields, then extras, then errors."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "service": SERVICE_NAME,
            "message": record.getMessage(),
        }
        entry.update(_extras(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            entry["stack"] = self.formatStack(record.stack_info)
        return json.dumps(entry, default=str)


class _IntakeHandler(logging.StreamHandler):  # type: ignore[type-arg]
    """Marker type so repeated configuration replaces our handler only."""


def configure_logging(log_level: str = "INFO") -> None:
    root = logging.getLogger()
    for existing in [h for h in root.handlers if isinstance(h, _IntakeHandler)]:
        root.removeHandler(existing)
    handler = _IntakeHandler()
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
