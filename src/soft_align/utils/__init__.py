"""Logging, device, seeding and environment helpers."""

from .devices import DEVICE_ENV_VAR, resolve_device
from .env import env_setting, load_env_file
from .logging import configure_logging
from .random import seed_everything

__all__ = [
    "DEVICE_ENV_VAR",
    "configure_logging",
    "env_setting",
    "load_env_file",
    "resolve_device",
    "seed_everything",
]
