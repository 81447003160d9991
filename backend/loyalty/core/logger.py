import logging
import os
import sys

from loyalty.core.types import dumps


TEXT_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"

# extra= fields copied into JSON records when present
EXTRA_KEYS = (
    "order_number",
    "user_id",
    "status",
    "retry_after",
    "fetched",
    "applied",
    "failed",
)


def setup_logging(level: str = "INFO", json_format: bool = False) -> logging.Logger:
    """Install a stdout handler on the root logger and return the app logger.

    Args:
        level: log level name, unknown names fall back to INFO
        json_format: emit one JSON object per record instead of text

    Returns:
        the "loyalty" logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    if json_format:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(fmt=TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    root_logger = logging.getLogger()
    # replace handlers from a previous call so records are not printed twice
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    # httpx logs every request at INFO; one line per oracle query is too much
    logging.getLogger("httpx").setLevel(max(log_level, logging.WARNING))

    return logging.getLogger("loyalty")


class JsonFormatter(logging.Formatter):
    """Structured JSON formatter.

    - datetime, level, logger, message are always present.
    - EXTRA_KEYS passed via extra= are copied as-is.
    - exception text goes to exc_info.
    """

    def __init__(self) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        log_record: dict[str, object] = {
            "datetime": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in EXTRA_KEYS:
            if hasattr(record, key):
                log_record[key] = getattr(record, key)

        service_name = getattr(record, "service_name", None) or os.getenv("SERVICE_NAME")
        if service_name:
            log_record["service_name"] = service_name

        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)

        return dumps(log_record)
