"""Centralized logging with rotation suitable for audit trails."""
import logging
import os
from logging.handlers import RotatingFileHandler

TRAIL_LOGGER_NAME = "civic.audit_trail"


def _formatter() -> logging.Formatter:
    return logging.Formatter(
        fmt="%(asctime)s | %(levelname)s | %(name)s | %(module)s:%(lineno)d | %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )


def init_logging(app) -> logging.Logger:
    log_dir = app.config.get("LOG_DIR") or os.path.join(app.instance_path, "logs")
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, "app.log")
    trail_path = os.path.join(log_dir, "audit_trail.log")

    level_name = (app.config.get("LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter = _formatter()

    file_handler = RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=5, encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter)

    logger = logging.getLogger(app.name)
    logger.setLevel(level)
    logger.handlers = [file_handler, stream_handler]
    logger.propagate = False

    # Trail write failures get their own file so operators can reconcile gaps in the audit ledger.
    trail_handler = RotatingFileHandler(trail_path, maxBytes=5_000_000, backupCount=10, encoding="utf-8")
    trail_handler.setLevel(logging.WARNING)
    trail_handler.setFormatter(formatter)
    trail_logger = logging.getLogger(TRAIL_LOGGER_NAME)
    trail_logger.setLevel(logging.WARNING)
    trail_logger.handlers = [trail_handler, stream_handler]
    trail_logger.propagate = False

    # Flask's built-in logger
    app.logger.handlers = logger.handlers
    app.logger.setLevel(level)

    logger.info("Logging initialized", extra={"path": log_path, "trail_path": trail_path})
    return logger


def trail_logger() -> logging.Logger:
    return logging.getLogger(TRAIL_LOGGER_NAME)
