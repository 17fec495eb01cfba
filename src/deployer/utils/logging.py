"""Rotating logger setup shared by the server and the agent."""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Union

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S%z"


def setup_logger(
    name: str = "deployer",
    log_file: str = "./logs/deployer.log",
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 3,
    level: Union[int, str] = logging.INFO,
) -> logging.Logger:
    """Configure the root ``deployer`` logger with a rotating file and console.

    Component loggers (``deployer.scheduler``, ``deployer.agent.installer``...)
    propagate into it, so calling this once per process is enough.

    Args:
        name: Logger name
        log_file: Path to log file (parent directory created if missing)
        max_bytes: Max size before rotation
        backup_count: Number of rotated files to keep
        level: Logging level, as int or name ("DEBUG", "INFO"...)

    Returns:
        Configured logger instance
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    Path(log_file).parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Idempotent: app factory and agent may both run in one test process
    if logger.handlers:
        return logger

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)

    file_handler = RotatingFileHandler(
        log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    console_handler = logging.StreamHandler()
    for handler in (file_handler, console_handler):
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger
