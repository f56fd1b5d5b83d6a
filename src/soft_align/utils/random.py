"""Seeding for reproducible initialisation and test runs."""

from __future__ import annotations

import random
from typing import Optional

import numpy as np
import torch

from .env import env_setting


def seed_everything(seed: Optional[int] = None, *, deterministic: bool = False) -> Optional[int]:
    """Seed Python, NumPy and PyTorch; return the seed used.

    Without ``seed`` the ``SOFT_ALIGN_SEED`` setting is read; when that is
    unset too nothing is seeded and ``None`` is returned.
    """

    if seed is None:
        configured = env_setting("seed")
        if configured is None:
            return None
        seed = int(configured)

    value = int(seed)
    random.seed(value)
    np.random.seed(value)
    torch.manual_seed(value)
    if deterministic:
        torch.use_deterministic_algorithms(True, warn_only=True)
    return value


__all__ = ["seed_everything"]
