"""Unified logging configuration for the Stitch backend."""
from __future__ import annotations

import logging
import os
from pathlib import Path

# Log directory, configurable via LOG_DIR env var for Docker
LOG_DIR = Path(os.getenv("LOG_DIR", str(Path(__file__).parent.parent / "logs")))
LOG_DIR.mkdir(exist_ok=True)

# Prevent duplicate handlers
_configured_loggers: set[str] = set()


def setup_logger(name: str, filename: str) -> logging.Logger:
    """Setup a logger with file and console handlers.

    Args:
        name: Logger name (e.g., 'stitch.engine', 'stitch.ingest')
        filename: Log file name (e.g., 'engine.log')

    Returns:
        Configured logger instance
    """
    if name in _configured_loggers:
        return logging.getLogger(name)

    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    logger.propagate = False  # Prevent duplicate logs

    # File handler
    fh = logging.FileHandler(LOG_DIR / filename, encoding='utf-8')
    fh.setLevel(logging.INFO)
    fh.setFormatter(logging.Formatter(
        "%(asctime)s [%(name)s] [%(levelname)s] %(message)s"
    ))

    # Console handler
    sh = logging.StreamHandler()
    sh.setLevel(logging.INFO)
    sh.setFormatter(logging.Formatter(
        "%(asctime)s [%(name)s] %(message)s"
    ))

    logger.addHandler(fh)
    logger.addHandler(sh)

    _configured_loggers.add(name)
    return logger


# Pre-configured loggers
def get_engine_logger() -> logging.Logger:
    """Logger for edge-walking, fan-out/fan-in and worker dispatch."""
    return setup_logger("stitch.engine", "engine.log")


def get_callback_logger() -> logging.Logger:
    """Logger for inbound worker callbacks and UX submissions."""
    return setup_logger("stitch.callback", "callback.log")


def get_ingest_logger() -> logging.Logger:
    """Logger for third-party webhook ingestion."""
    return setup_logger("stitch.ingest", "ingest.log")


def get_sse_logger() -> logging.Logger:
    """Logger for SSE events (FastAPI side)."""
    return setup_logger("stitch.sse", "sse.log")
