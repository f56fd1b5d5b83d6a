"""Configuration for the soft alignment engine."""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, Optional, Union

import yaml

QueryPolicy = Literal["learned", "priming"]
QUERY_POLICIES: tuple[str, ...] = ("learned", "priming")


@dataclass(slots=True)
class SoftAlignConfig:
    """Runtime options for :class:`~soft_align.soft_align.SoftAlign`.

    ``query_policy`` picks where the first query comes from: ``"learned"``
    uses the ``init_query`` parameter, ``"priming"`` starts from zeros and
    drops the first decoder output. ``encoder_gradients`` decides whether the
    backward pass reaches the encoder or treats encoded vectors as constants.
    """

    query_size: int
    input_size: int
    query_policy: QueryPolicy = "learned"
    encoder_gradients: bool = True
    focus_batch_size: int = 1

    @property
    def priming(self) -> bool:
        return self.query_policy == "priming"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_soft_align_config(
    source: Union[SoftAlignConfig, Mapping[str, Any], None] = None,
    **overrides: Any,
) -> SoftAlignConfig:
    """Build a validated config from a mapping, an existing config, or keywords."""

    if isinstance(source, SoftAlignConfig):
        config = replace(source, **overrides)
    else:
        payload: Dict[str, Any] = dict(source or {})
        payload.update(overrides)
        known = {item.name for item in fields(SoftAlignConfig)}
        unknown = sorted(set(payload) - known)
        if unknown:
            raise ValueError(f"Unknown soft_align config keys: {', '.join(unknown)}")
        missing = [name for name in ("query_size", "input_size") if name not in payload]
        if missing:
            raise ValueError(f"Missing soft_align config keys: {', '.join(missing)}")
        config = SoftAlignConfig(**payload)
    _validate(config)
    return config


def load_soft_align_config(path: Union[str, Path], **overrides: Any) -> SoftAlignConfig:
    """Read a YAML file holding the config, optionally under a ``soft_align`` key."""

    with Path(path).open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, Mapping):
        raise ValueError(f"Config file {path} must contain a mapping.")
    section: Optional[Any] = raw.get("soft_align", raw)
    if not isinstance(section, Mapping):
        raise ValueError(f"Config file {path} has a non-mapping 'soft_align' section.")
    return build_soft_align_config(section, **overrides)


def _validate(config: SoftAlignConfig) -> None:
    config.query_size = int(config.query_size)
    config.input_size = int(config.input_size)
    config.focus_batch_size = int(config.focus_batch_size)
    config.encoder_gradients = bool(config.encoder_gradients)
    if config.query_size <= 0:
        raise ValueError("query_size must be positive.")
    if config.input_size < 0:
        raise ValueError("input_size must be non-negative.")
    if config.focus_batch_size <= 0:
        raise ValueError("focus_batch_size must be positive.")
    if config.query_policy not in QUERY_POLICIES:
        raise ValueError(
            f"query_policy must be one of {', '.join(QUERY_POLICIES)}, got {config.query_policy!r}."
        )


__all__ = [
    "QUERY_POLICIES",
    "QueryPolicy",
    "SoftAlignConfig",
    "build_soft_align_config",
    "load_soft_align_config",
]
