from __future__ import annotations

import io
import logging

import numpy as np
import pytest
import torch

from soft_align.utils import DEVICE_ENV_VAR, configure_logging, env_setting, resolve_device, seed_everything


def test_configure_logging_attaches_single_handler() -> None:
    logger = configure_logging(logging.DEBUG, name="soft align.test")
    configure_logging("warning", name="soft align.test")
    assert len(logger.handlers) == 1
    assert logger.level == logging.WARNING
    assert logger.propagate is False


def test_configure_logging_reads_level_setting(monkeypatch) -> None:
    monkeypatch.setenv("SOFT_ALIGN_LOG_LEVEL", "error")
    stream = io.StringIO()
    logger = configure_logging(name="soft align.env_level", stream=stream)
    assert logger.level == logging.ERROR
    logging.getLogger("soft align.env_level.child").error("focus_failed | lane=%d", 2)
    assert "focus_failed | lane=2" in stream.getvalue()


def test_configure_logging_rejects_unknown_level() -> None:
    with pytest.raises(ValueError):
        configure_logging("chatty", name="soft align.bad_level")


def test_env_setting_strips_and_defaults(monkeypatch) -> None:
    monkeypatch.setenv("SOFT_ALIGN_SEED", "  11 ")
    assert env_setting("seed") == "11"
    monkeypatch.setenv("SOFT_ALIGN_SEED", "   ")
    assert env_setting("seed", "3") == "3"


def test_seed_everything_is_reproducible() -> None:
    assert seed_everything(7) == 7
    first = (torch.randn(3), np.random.rand(2))
    seed_everything(7)
    second = (torch.randn(3), np.random.rand(2))
    assert torch.equal(first[0], second[0])
    assert np.array_equal(first[1], second[1])


def test_seed_everything_falls_back_to_setting(monkeypatch) -> None:
    monkeypatch.delenv("SOFT_ALIGN_SEED", raising=False)
    assert seed_everything() is None
    monkeypatch.setenv("SOFT_ALIGN_SEED", "21")
    assert seed_everything() == 21


def test_resolve_device_defaults_to_cpu(monkeypatch) -> None:
    monkeypatch.delenv(DEVICE_ENV_VAR, raising=False)
    assert resolve_device() == "cpu"
    monkeypatch.setenv(DEVICE_ENV_VAR, " CPU ")
    assert resolve_device() == "cpu"


def test_resolve_device_rejects_unknown(monkeypatch) -> None:
    monkeypatch.setenv(DEVICE_ENV_VAR, "tpu")
    with pytest.raises(ValueError):
        resolve_device()
    assert resolve_device("cpu") == "cpu"
