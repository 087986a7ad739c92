"""File logging setup for the engine loggers."""

from __future__ import annotations

import logging
from pathlib import Path

ENGINE_LOGGER_NAMES = (
    "prompt_flow_engine.providers",
    "prompt_flow_engine.orchestrator",
    "prompt_flow_engine.repository",
)
DEFAULT_LOG_FILE = Path("logs/prompt_flow.log")


def _has_file_handler(logger: logging.Logger, path: Path) -> bool:
    target_path = path.resolve()
    for handler in logger.handlers:
        if not isinstance(handler, logging.FileHandler):
            continue
        handler_path = Path(getattr(handler, "baseFilename", "")).resolve()
        if handler_path == target_path:
            return True
    return False


def configure_logging(log_file: str | Path = DEFAULT_LOG_FILE, level: int = logging.INFO) -> None:
    """Attach one file handler per engine logger; repeated calls are no-ops."""
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    for name in ENGINE_LOGGER_NAMES:
        logger = logging.getLogger(name)
        if not _has_file_handler(logger, path):
            file_handler = logging.FileHandler(path, encoding="utf-8")
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        logger.setLevel(level)
        logger.propagate = False
