import logging
import os
from collections.abc import MutableMapping
from typing import Any


logging.addLevelName(logging.INFO + 5, "NOTICE")


class ShipyardLoggerAdapter(logging.LoggerAdapter):
    def process(
        self, msg: str, kwargs: MutableMapping[str, Any]
    ) -> tuple[str, MutableMapping[str, Any]]:
        # Callers may pass session_id=... to tag every line for a sandbox
        session_id = kwargs.pop("session_id", None)
        if session_id:
            msg = f"[Session: {session_id}] {msg}"
        return msg, kwargs

    def notice(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        # Stands out from info without being a warning
        self.log(logging.getLevelName("NOTICE"), str(msg), *args, **kwargs)


class ColoredFormatter(logging.Formatter):
    """Custom formatter to add colors to log levels."""

    COLORS = {
        "CRITICAL": "\033[91m",  # Red
        "ERROR": "\033[91m",  # Red
        "WARNING": "\033[93m",  # Yellow
        "NOTICE": "\033[94m",  # Blue
        "INFO": "\033[92m",  # Green
        "DEBUG": "\033[96m",  # Light Green
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        levelname = record.levelname
        if levelname in self.COLORS:
            prefix = self.COLORS[levelname]
            suffix = self.RESET
            formatted_message = super().format(record)
            # Ensure the levelname with colon is 9 characters long
            level_display = f"{prefix}{levelname}:{suffix}".ljust(9 + len(prefix))
            return f"{level_display}{formatted_message}"
        return super().format(record)


def get_log_level_from_str(log_level_str: str | None = None) -> int:
    log_level_dict = {
        "CRITICAL": logging.CRITICAL,
        "ERROR": logging.ERROR,
        "WARNING": logging.WARNING,
        "NOTICE": logging.getLevelName("NOTICE"),
        "INFO": logging.INFO,
        "DEBUG": logging.DEBUG,
        "NOTSET": logging.NOTSET,
    }

    if log_level_str is None:
        log_level_str = os.environ.get("LOG_LEVEL", "info")

    return log_level_dict.get(log_level_str.upper(), logging.INFO)


def get_standard_formatter() -> ColoredFormatter:
    """Returns a standard colored logging formatter."""
    return ColoredFormatter(
        "%(asctime)s %(filename)30s %(lineno)4s: %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )


def setup_logger(
    name: str = __name__,
    log_level: int | None = None,
    propagate: bool = True,
) -> ShipyardLoggerAdapter:
    logger = logging.getLogger(name)

    # Handlers already attached means the logger is configured
    if logger.handlers:
        return ShipyardLoggerAdapter(logger, extra={})

    logger.setLevel(log_level if log_level is not None else get_log_level_from_str())

    handler = logging.StreamHandler()
    handler.setLevel(logger.level)
    handler.setFormatter(get_standard_formatter())
    logger.addHandler(handler)

    logger.propagate = propagate

    return ShipyardLoggerAdapter(logger, extra={})
