"""
Logging setup for the Credential Fulfillment Engine.

All engine loggers live under the ``credential_fulfillment`` namespace and
propagate to one package logger that owns the handlers: a colored console
stream and, unless disabled, a size-rotated log file. Behaviour is driven
by LOG_LEVEL, LOG_DIR, DEBUG_MODE and LOG_TO_FILE.
"""

import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Optional

import colorlog


ROOT_LOGGER_NAME = "credential_fulfillment"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUPS = 5

LEVEL_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}

_configured = False


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _line_format(debug_mode: bool) -> str:
    # Debug output points at the emitting function
    origin = "%(name)s.%(funcName)s:%(lineno)d" if debug_mode else "%(name)s"
    return f"%(asctime)s [%(levelname)8s] {origin} - %(message)s"


class CredentialEngineLogger:
    """Owns the handlers of the package logger."""

    def __init__(self, level: Optional[str] = None, log_dir: Optional[str] = None,
                 debug_mode: Optional[bool] = None, log_to_file: Optional[bool] = None):
        self.level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
        self.log_dir = log_dir or os.getenv("LOG_DIR", "./logs")
        self.debug_mode = _env_flag("DEBUG_MODE", "false") if debug_mode is None else debug_mode
        self.log_to_file = _env_flag("LOG_TO_FILE", "true") if log_to_file is None else log_to_file
        self.logger = logging.getLogger(ROOT_LOGGER_NAME)

    def configure(self) -> logging.Logger:
        self.logger.setLevel(getattr(logging, self.level, logging.INFO))
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        self.logger.addHandler(self._console_handler())
        if self.log_to_file:
            self.logger.addHandler(self._file_handler())

        self.logger.propagate = False
        return self.logger

    def _console_handler(self) -> logging.Handler:
        handler = colorlog.StreamHandler(sys.stdout)
        handler.setFormatter(colorlog.ColoredFormatter(
            "%(log_color)s" + _line_format(self.debug_mode),
            datefmt=DATE_FORMAT,
            log_colors=LEVEL_COLORS,
        ))
        return handler

    def _file_handler(self) -> logging.Handler:
        Path(self.log_dir).mkdir(parents=True, exist_ok=True)
        handler = logging.handlers.RotatingFileHandler(
            Path(self.log_dir) / f"{ROOT_LOGGER_NAME}.log",
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUPS,
            encoding="utf-8",
        )
        handler.setFormatter(logging.Formatter(_line_format(self.debug_mode), datefmt=DATE_FORMAT))
        return handler


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Logger for a module of the engine.

    Args:
        name: Dotted logger name, usually ``__name__``. Names outside the
            package namespace are nested under it.
    """
    global _configured
    if not _configured:
        CredentialEngineLogger().configure()
        _configured = True

    if not name or name == ROOT_LOGGER_NAME:
        return logging.getLogger(ROOT_LOGGER_NAME)
    if not name.startswith(ROOT_LOGGER_NAME + "."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


def setup_logging(**overrides) -> logging.Logger:
    """(Re)configure the package logger; call once at startup after loading .env."""
    global _configured
    logger = CredentialEngineLogger(**overrides).configure()
    _configured = True
    logger.debug(
        f"Logging configured: level={logging.getLevelName(logger.level)}, "
        f"handlers={[type(h).__name__ for h in logger.handlers]}"
    )
    return logger
