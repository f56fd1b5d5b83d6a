"""Device selection for loading and running models."""

from __future__ import annotations

from typing import Literal, Optional

import torch

from .env import ENV_PREFIX, env_setting

DEVICE_ENV_VAR = ENV_PREFIX + "DEVICE"

Device = Literal["cpu", "cuda", "mps"]


def resolve_device(preferred: Optional[str] = None) -> Device:
    """Pick the device from ``preferred``, then ``SOFT_ALIGN_DEVICE``, then the CPU.

    Requesting an accelerator that is not available raises ``ValueError``.
    """

    device = (preferred or env_setting("device", "cpu") or "cpu").strip().lower()
    if device == "cpu":
        return "cpu"
    if device == "cuda":
        if not torch.cuda.is_available():
            raise ValueError(f"Device 'cuda' requested via {DEVICE_ENV_VAR}, but CUDA is not available.")
        return "cuda"
    if device == "mps":
        if not (hasattr(torch.backends, "mps") and torch.backends.mps.is_available()):
            raise ValueError(f"Device 'mps' requested via {DEVICE_ENV_VAR}, but MPS is not available.")
        return "mps"
    raise ValueError(f"Unsupported device {device!r}; expected cpu, cuda or mps.")


__all__ = ["DEVICE_ENV_VAR", "Device", "resolve_device"]
