from __future__ import annotations

import logging
import os
import tempfile
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Mapping, Optional

ROOT_LOGGER_NAME = "AskOllama.Overlay"
LOG_DIR_ENV_VAR = "ASKOLLAMA_OVERLAY_LOG_DIR"
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def resolve_logs_dir(log_dir_name: str = "askollama-overlay", env: Optional[Mapping[str, str]] = None) -> Path:
    """
    Resolve the directory to store overlay logs.

    Strategy:
    - Use ASKOLLAMA_OVERLAY_LOG_DIR if set.
    - Fall back to XDG state/cache locations, then `cwd/logs/<log_dir_name>`.
    - Final fallback: tempdir/<log_dir_name>.
    """
    source = os.environ if env is None else env
    candidates = []

    env_override = source.get(LOG_DIR_ENV_VAR)
    if env_override:
        candidates.append(Path(env_override).expanduser())

    state_home = Path(source.get("XDG_STATE_HOME") or Path.home() / ".local" / "state")
    cache_home = Path(source.get("XDG_CACHE_HOME") or Path.home() / ".cache")
    candidates.append(state_home / log_dir_name)
    candidates.append(cache_home / log_dir_name)
    candidates.append(Path.cwd() / "logs" / log_dir_name)

    for target in candidates:
        try:
            target.mkdir(parents=True, exist_ok=True)
            return target
        except OSError:
            continue

    temp_fallback = Path(tempfile.gettempdir()) / log_dir_name
    temp_fallback.mkdir(parents=True, exist_ok=True)
    return temp_fallback


def build_rotating_file_handler(
    log_dir: Path,
    filename: str,
    *,
    retention: int = 5,
    max_bytes: int = 512 * 1024,
    formatter: Optional[logging.Formatter] = None,
) -> RotatingFileHandler:
    """Construct a rotating file handler with sane defaults."""
    retention = max(1, retention)
    backup_count = max(0, retention - 1)
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_dir / filename,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    if formatter is not None:
        handler.setFormatter(formatter)
    return handler


def resolve_log_level(debug_enabled: bool) -> int:
    return logging.DEBUG if debug_enabled else logging.INFO


def configure_logging(
    *,
    debug_enabled: bool,
    retention: int = 5,
    log_dir: Optional[Path] = None,
    filename: str = "overlay-client.log",
) -> logging.Logger:
    """Attach a rotating file handler to the overlay's root logger.

    Calling this again replaces the handler it installed previously.
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(resolve_log_level(debug_enabled))
    for existing in list(logger.handlers):
        if getattr(existing, "_askollama_overlay", False):
            logger.removeHandler(existing)
            existing.close()
    target_dir = log_dir if log_dir is not None else resolve_logs_dir()
    handler = build_rotating_file_handler(
        target_dir,
        filename,
        retention=retention,
        formatter=logging.Formatter(LOG_FORMAT),
    )
    handler._askollama_overlay = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    logger.propagate = True
    return logger
