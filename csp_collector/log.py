"""Structured JSON logging for the collector."""

from pythonjsonlogger.json import JsonFormatter


class CustomJsonFormatter(JsonFormatter):
    """One JSON object per record, with the fields passed through ``extra`` at the top level."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = self.formatTime(record, self.datefmt)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name

        log_record.pop("asctime", None)


def logging_config(level="INFO"):
    """Build the Django ``LOGGING`` dict: everything to stdout as JSON."""
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": CustomJsonFormatter,
                "fmt": "%(message)s",
                "datefmt": "%Y-%m-%dT%H:%M:%S%z",
            },
        },
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
                "formatter": "json",
            },
        },
        "root": {
            "handlers": ["stdout"],
            "level": level.upper(),
        },
        "loggers": {
            # Request lines are already covered by the collector's own records
            "django.server": {"level": "WARNING"},
        },
    }
