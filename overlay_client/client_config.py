"""Configuration helpers for the screenshot assistant overlay client."""
from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

CLIENT_DIR = Path(__file__).resolve().parent
DEFAULT_ROOT = CLIENT_DIR.parent
PORT_FILE_ENV_VAR = "ASKOLLAMA_OVERLAY_PORT_FILE"

LOG_RETENTION_MIN = 1
LOG_RETENTION_MAX = 20
CONNECT_TIMEOUT_MIN = 0.1
CONNECT_TIMEOUT_MAX = 30.0


@dataclass
class ClientSettings:
    """Values used to bootstrap the client before the host answers."""

    port_file: Optional[Path] = None
    connect_timeout: float = 1.5
    log_retention: int = 5
    show_status: bool = True


def _coerce_retention(value: Any, fallback: int) -> int:
    try:
        numeric = int(value)
    except (TypeError, ValueError):
        return fallback
    return min(LOG_RETENTION_MAX, max(LOG_RETENTION_MIN, numeric))


def _coerce_timeout(value: Any, fallback: float) -> float:
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return fallback
    return min(CONNECT_TIMEOUT_MAX, max(CONNECT_TIMEOUT_MIN, numeric))


def load_client_settings(settings_path: Path) -> ClientSettings:
    """Read bootstrap values from overlay_settings.json if it exists."""
    defaults = ClientSettings()
    try:
        raw = settings_path.read_text(encoding="utf-8")
    except (FileNotFoundError, OSError):
        return defaults

    try:
        data: Dict[str, Any] = json.loads(raw)
    except json.JSONDecodeError:
        return defaults
    if not isinstance(data, dict):
        return defaults

    port_file: Optional[Path] = None
    port_raw = data.get("port_file")
    if isinstance(port_raw, str) and port_raw.strip():
        candidate = Path(port_raw.strip()).expanduser()
        if not candidate.is_absolute():
            candidate = settings_path.parent / candidate
        port_file = candidate

    return ClientSettings(
        port_file=port_file,
        connect_timeout=_coerce_timeout(data.get("connect_timeout"), defaults.connect_timeout),
        log_retention=_coerce_retention(data.get("log_retention"), defaults.log_retention),
        show_status=bool(data.get("show_status", defaults.show_status)),
    )


def resolve_port_file(
    cli_value: Optional[str],
    settings: ClientSettings,
    *,
    root: Path = DEFAULT_ROOT,
    env: Optional[Mapping[str, str]] = None,
) -> Path:
    if cli_value:
        return Path(cli_value).expanduser().resolve()
    source = os.environ if env is None else env
    env_override = source.get(PORT_FILE_ENV_VAR)
    if env_override:
        return Path(env_override).expanduser().resolve()
    if settings.port_file is not None:
        return settings.port_file.resolve()
    return (root / "port.json").resolve()
