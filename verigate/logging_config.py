"""Centralized logging configuration for verigate.

All modules should import their logger via:
    from verigate.logging_config import get_logger
    logger = get_logger(__name__)

Logs are written to a rotating file at:
    ~/.verigate/verigate.log   (default)
    or $VERIGATE_LOG_FILE      (override)

Console output for interactive use goes through Rich. The file logger
captures every verification decision, retry and degraded verifier call
for post-hoc debugging.
"""

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
LOG_DIR = Path.home() / ".verigate"
LOG_FILE = os.environ.get(
    "VERIGATE_LOG_FILE",
    str(LOG_DIR / "verigate.log"),
)
LOG_LEVEL = os.environ.get("VERIGATE_LOG_LEVEL", "INFO")
MAX_BYTES = 10 * 1024 * 1024  # 10 MB per file
BACKUP_COUNT = 3

_initialized = False


def _ensure_log_dir() -> None:
    """Create log directory if it doesn't exist."""
    log_path = Path(LOG_FILE)
    log_path.parent.mkdir(parents=True, exist_ok=True)


def setup_logging() -> None:
    """Initialize the centralized file logger (idempotent).

    Safe to call from library code; subsequent calls are no-ops.
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    root = logging.getLogger("verigate")
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))

    # Avoid duplicate handlers on re-import
    if any(isinstance(h, RotatingFileHandler) for h in root.handlers):
        return

    try:
        _ensure_log_dir()
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=MAX_BYTES,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
    except OSError:
        # Read-only home directories (containers, CI) still get stderr logging
        # through whatever the host application configured.
        root.debug("File logging unavailable at %s", LOG_FILE)
        return

    fmt = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    root.info("Logging initialized -> %s (level=%s)", LOG_FILE, LOG_LEVEL)


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the given module name.

    Usage:
        logger = get_logger(__name__)
        logger.info("Verification approved: %s", request_id)
        logger.error("Judge call failed", exc_info=True)
    """
    setup_logging()
    return logging.getLogger(name)
