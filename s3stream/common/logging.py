import json
import logging
from logging.config import dictConfig

# Chatty at DEBUG: every retry and header of every part upload.
_LIBRARY_LOGGERS = ("boto3", "botocore", "s3transfer", "urllib3")


def setup_logging(level: str = "INFO", *, library_level: str = "WARNING") -> None:
    """Route writer logs to stderr as JSON lines.

    ``level`` applies to the ``s3stream`` loggers; the AWS SDK loggers stay at
    ``library_level`` unless asked otherwise. Startup messages use a plain
    one-line format so that CLI banners stay readable.
    """
    library_loggers = {
        name: {"level": library_level, "propagate": True} for name in _LIBRARY_LOGGERS
    }
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "json": {
                    "()": JsonFormatter,
                },
                "plain": {
                    "format": "%(levelname)s %(name)s: %(message)s",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "stream": "ext://sys.stderr",
                    "formatter": "json",
                },
                "startup_console": {
                    "class": "logging.StreamHandler",
                    "stream": "ext://sys.stderr",
                    "formatter": "plain",
                },
            },
            "root": {
                "level": "WARNING",
                "handlers": ["console"],
            },
            "loggers": {
                "s3stream": {
                    "level": level,
                },
                "s3stream.startup": {
                    "handlers": ["startup_console"],
                    "level": "INFO",
                    "propagate": False,
                },
                **library_loggers,
            },
        }
    )


class JsonFormatter(logging.Formatter):
    """One JSON object per record; ``extra={"extra": {...}}`` fields are merged in."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "extra", None)
        if isinstance(context, dict):
            # Writer context never overrides the record's own fields.
            for key, value in context.items():
                payload.setdefault(key, value)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)
