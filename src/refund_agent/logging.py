"""Console logging for refund-agent.

Module loggers are children of the ``refund_agent`` logger, which owns the
handlers: stderr always, plus ``LOG_FILE`` when set. The API, the CLI and
long batch runs therefore share one file handle however many modules log.
"""

import logging
import os
from typing import Optional

ROOT_NAME = "refund_agent"

_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}


def _coerce_level(value: Optional[str]) -> int:
    if isinstance(value, str):
        return _LEVELS.get(value.upper().strip(), logging.INFO)
    if isinstance(value, int):
        return value
    return logging.INFO


def _root_logger() -> logging.Logger:
    root = logging.getLogger(ROOT_NAME)
    if getattr(root, "_refund_agent_configured", False):
        return root

    level = _coerce_level(os.environ.get("LOG_LEVEL", "INFO"))
    root.setLevel(level)
    formatter = logging.Formatter(
        fmt="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    sh = logging.StreamHandler()
    sh.setFormatter(formatter)
    root.addHandler(sh)

    log_file = os.environ.get("LOG_FILE")
    if log_file:
        try:
            fh = logging.FileHandler(log_file, encoding="utf-8")
            fh.setFormatter(formatter)
            root.addHandler(fh)
        except OSError:
            root.warning("LOG_FILE could not be opened; continuing without file logging")

    # Keep batch progress out of whatever the host application logs.
    root.propagate = False
    setattr(root, "_refund_agent_configured", True)
    return root


def get_logger(name: str) -> logging.Logger:
    """Return ``refund_agent.<name>``, e.g. ``get_logger("orchestrator-batch")``."""
    return _root_logger().getChild(name)
