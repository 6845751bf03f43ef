"""Dev-mode detection for the overlay client."""

from __future__ import annotations

import os
from typing import Mapping, Optional

DEV_MODE_ENV_VAR = "ASKOLLAMA_OVERLAY_DEV_MODE"

_TRUTHY = {"1", "true", "yes", "on"}


def is_dev_build(env: Optional[Mapping[str, str]] = None) -> bool:
    source = os.environ if env is None else env
    value = source.get(DEV_MODE_ENV_VAR)
    if value is None:
        return False
    return value.strip().lower() in _TRUTHY


DEBUG_CONFIG_ENABLED = is_dev_build()
