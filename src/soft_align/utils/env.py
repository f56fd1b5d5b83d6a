"""Environment-backed settings (``SOFT_ALIGN_*``), optionally read from a .env file."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import find_dotenv, load_dotenv

ENV_PREFIX = "SOFT_ALIGN_"


@lru_cache(maxsize=1)
def load_env_file(path: Optional[str] = None) -> bool:
    """Load ``path`` or the nearest .env above the working directory, once.

    Variables already present in the process environment are kept.
    """

    env_path = path or find_dotenv(usecwd=True)
    if not env_path or not Path(env_path).exists():
        return False
    return load_dotenv(env_path, override=False)


def env_setting(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return ``SOFT_ALIGN_<NAME>`` stripped, or ``default`` when unset or blank."""

    load_env_file()
    value = os.getenv(ENV_PREFIX + name.upper())
    if value is None or not value.strip():
        return default
    return value.strip()


__all__ = ["ENV_PREFIX", "env_setting", "load_env_file"]
