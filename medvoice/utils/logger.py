"""
medvoice/utils/logger.py

MedVoice - Logging Utility (File, Console, Rotation, Verbosity)
---------------------------------------------------------------
• Rotating file log plus console output for the voice engine and its backends
• Init-once loggers keyed by module name, safe to call from backend worker threads
• Timestamp, module, level, message format; falls back to console on disk error

License: Apache 2.0
"""

import sys
import logging
from logging.handlers import RotatingFileHandler
from threading import Lock
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_LOG_FILE = "logs/medvoice.log"
DEFAULT_LOG_LEVEL = logging.INFO
DEFAULT_MAX_BYTES = 2 * 1024 * 1024  # 2 MB before rotating
DEFAULT_BACKUP_COUNT = 5

LOG_FORMAT = '[%(asctime)s | %(levelname)-8s | %(module)s:%(lineno)d] %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

_LOGGERS: Dict[str, logging.Logger] = {}
_LOG_INIT_LOCK = Lock()
_DEFAULT_CONFIG: Dict[str, Any] = {}


class LoggerConfig:
    """Logger settings read from the ``logging`` section of the app config."""
    def __init__(self, config_dict: Optional[dict] = None):
        cfg = config_dict.get('logging', {}) if config_dict else {}
        self.log_to_file = cfg.get('file_enabled', True)
        self.log_to_console = cfg.get('console_enabled', True)
        self.log_file = cfg.get('file_path', DEFAULT_LOG_FILE)
        self.log_level = getattr(logging, str(cfg.get('level', 'INFO')).upper(), DEFAULT_LOG_LEVEL)
        self.max_bytes = cfg.get('max_file_size', DEFAULT_MAX_BYTES)
        self.backup_count = cfg.get('backup_count', DEFAULT_BACKUP_COUNT)


def _install_handlers(logger: logging.Logger, cfg: LoggerConfig):
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(cfg.log_level)
    logger.propagate = False
    fmt = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    if cfg.log_to_file:
        log_file = Path(cfg.log_file)
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_file, maxBytes=cfg.max_bytes, backupCount=cfg.backup_count, encoding='utf-8')
            file_handler.setFormatter(fmt)
            file_handler.setLevel(cfg.log_level)
            logger.addHandler(file_handler)
        except OSError as e:
            print(f"Logger: File handler setup failed: {e}", file=sys.stderr)

    if cfg.log_to_console or not logger.handlers:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(fmt)
        console_handler.setLevel(cfg.log_level)
        logger.addHandler(console_handler)


def configure_logging(config_dict: Optional[dict] = None):
    """Apply the ``logging`` config to every logger, including those created at import time."""
    global _DEFAULT_CONFIG
    with _LOG_INIT_LOCK:
        _DEFAULT_CONFIG = dict(config_dict or {})
        cfg = LoggerConfig(_DEFAULT_CONFIG)
        for logger in _LOGGERS.values():
            _install_handlers(logger, cfg)


def get_logger(name: str = "medvoice", config_dict: Optional[dict] = None) -> logging.Logger:
    """Get a logger. Init-once per logger name."""
    if name in _LOGGERS:
        return _LOGGERS[name]

    with _LOG_INIT_LOCK:
        if name in _LOGGERS:
            return _LOGGERS[name]

        logger = logging.getLogger(name)
        _install_handlers(logger, LoggerConfig(config_dict if config_dict is not None else _DEFAULT_CONFIG))
        _LOGGERS[name] = logger
        return logger


def set_verbosity(level: str = "INFO"):
    """Change verbosity for all loggers."""
    lvl = getattr(logging, level.upper(), DEFAULT_LOG_LEVEL)
    for logger in _LOGGERS.values():
        logger.setLevel(lvl)
        for handler in logger.handlers:
            handler.setLevel(lvl)


def log_traceback(logger: Optional[logging.Logger] = None, exc: Optional[BaseException] = None,
                  msg: str = "Unhandled Exception"):
    """Log traceback with optional message."""
    import traceback as tb
    logger = logger or get_logger()
    exc_info = sys.exc_info() if exc is None else (type(exc), exc, exc.__traceback__)
    logger.error(f"{msg}\n{''.join(tb.format_exception(*exc_info))}")


# -------------------------------
# Demo / Test Routine
# -------------------------------

if __name__ == "__main__":
    log = get_logger("medvoice.demo")
    log.info("Info log")
    log.warning("Warning")
    try:
        1 / 0
    except ZeroDivisionError as ex:
        log_traceback(log, ex)
    set_verbosity("DEBUG")
    log.debug("Now in DEBUG mode")
