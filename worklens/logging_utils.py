from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

ROOT_LOGGER = "worklens"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def init_logger(name: str, log_dir: Path, level: str = "INFO") -> logging.Logger:
    """Configure the ``worklens`` logger tree and return the ``name`` child.

    Handlers go on the package root so component loggers created with
    :func:`get_logger` share the same file and console output.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not root.handlers:
        log_path = log_dir / f"{name}.log"
        file_handler = RotatingFileHandler(log_path, maxBytes=5 * 1024 * 1024, backupCount=5, encoding="utf-8")
        formatter = logging.Formatter(LOG_FORMAT)
        file_handler.setFormatter(formatter)

        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)

        root.addHandler(file_handler)
        root.addHandler(console_handler)

    return get_logger(name)


def get_logger(component: str) -> logging.Logger:
    if component == ROOT_LOGGER or component.startswith(f"{ROOT_LOGGER}."):
        return logging.getLogger(component)
    return logging.getLogger(f"{ROOT_LOGGER}.{component}")
