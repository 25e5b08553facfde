# =============================================================================
# Logging Setup
# =============================================================================
# The TUI owns the terminal, so log records go to a file in the XDG state
# directory instead of stderr. Modules log through the usual
# `logging.getLogger(__name__)`; this module only wires the root handler.
# =============================================================================

import logging
from pathlib import Path

from kestrel_tui.config import Config


LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

# Third-party loggers that are chatty at DEBUG
_NOISY_LOGGERS = ("aioimaplib", "httpx", "httpcore", "aiosqlite")


def setup_logging(config: Config, *, debug: bool = False) -> Path:
    """
    Route all logging to the application log file.

    Args:
        config: Loaded configuration ([logging] section).
        debug: Force DEBUG level regardless of config.

    Returns:
        Path of the log file in use.
    """
    log_path = config.log_file_path()
    log_path.parent.mkdir(parents=True, exist_ok=True)

    level = logging.DEBUG if debug else getattr(logging, config.logging.level, logging.INFO)

    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.INFO))

    return log_path
