"""Versioned persistence for :class:`~soft_align.soft_align.SoftAlign` models.

A checkpoint stores, in order, the attentor, the decoder, the optional input
combiner and the initial query. The encoder is never stored; callers pass it
back in when loading.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Type, Union

import torch
from torch import nn

from .combiner import Combiner, CombinerConfig
from .config import build_soft_align_config
from .recurrent import LSTMBlock, LSTMBlockConfig
from .soft_align import Encoder, SoftAlign
from .utils import resolve_device

LOGGER = logging.getLogger("soft align.checkpoint")

CHECKPOINT_FORMAT_VERSION = "1.0"
COMPONENT_ORDER: Tuple[str, ...] = ("attentor", "decoder", "in_combiner", "init_query")


@dataclass(frozen=True, slots=True)
class ComponentKind:
    module_type: Type[nn.Module]
    config_type: type


class ComponentRegistry:
    """Maps component kind names to the module and config classes that rebuild them.

    Each module class must take its config dataclass as the only constructor
    argument and expose it as ``.config``.
    """

    def __init__(self) -> None:
        self._kinds: Dict[str, ComponentKind] = {}

    def register(self, name: str, module_type: Type[nn.Module], config_type: type) -> None:
        key = str(name).lower()
        if key in self._kinds:
            raise ValueError(f"Component kind '{name}' is already registered.")
        self._kinds[key] = ComponentKind(module_type=module_type, config_type=config_type)

    def kind_of(self, module: nn.Module) -> str:
        for name, kind in self._kinds.items():
            if type(module) is kind.module_type:
                return name
        raise KeyError(f"Component type {type(module).__name__} is not registered.")

    def build(self, name: str, config: Mapping[str, Any]) -> nn.Module:
        key = str(name).lower()
        if key not in self._kinds:
            raise KeyError(f"Component kind '{name}' is not registered.")
        kind = self._kinds[key]
        return kind.module_type(kind.config_type(**config))

    def __contains__(self, name: object) -> bool:
        return str(name).lower() in self._kinds


def default_registry() -> ComponentRegistry:
    """Return a fresh registry knowing the built-in components."""

    registry = ComponentRegistry()
    registry.register("combiner", Combiner, CombinerConfig)
    registry.register("lstm_block", LSTMBlock, LSTMBlockConfig)
    return registry


def soft_align_state(
    model: SoftAlign, registry: Optional[ComponentRegistry] = None
) -> Dict[str, Any]:
    """Build the ordered checkpoint payload for ``model``."""

    registry = registry or default_registry()
    components = [
        _component_entry("attentor", model.attentor, registry),
        _component_entry("decoder", model.decoder, registry),
        None
        if model.in_combiner is None
        else _component_entry("in_combiner", model.in_combiner, registry),
        {"name": "init_query", "tensor": model.init_query.detach().cpu().clone()},
    ]
    return {
        "format_version": CHECKPOINT_FORMAT_VERSION,
        "config": model.config.to_dict(),
        "components": components,
    }


def save_soft_align(
    model: SoftAlign,
    path: Union[str, Path],
    *,
    registry: Optional[ComponentRegistry] = None,
) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    torch.save(soft_align_state(model, registry), target)
    LOGGER.info("checkpoint_saved | path=%s", target)
    return target


def load_soft_align(
    path: Union[str, Path],
    *,
    encoder: Optional[Encoder] = None,
    registry: Optional[ComponentRegistry] = None,
    map_location: Union[str, torch.device, None] = None,
) -> SoftAlign:
    """Rebuild a model from ``path``. The encoder field is left to the caller."""

    if map_location is None:
        map_location = resolve_device()
    payload = torch.load(Path(path), map_location=map_location, weights_only=False)
    model = soft_align_from_state(payload, encoder=encoder, registry=registry).to(map_location)
    LOGGER.info("checkpoint_loaded | path=%s | device=%s", path, map_location)
    return model


def soft_align_from_state(
    payload: Mapping[str, Any],
    *,
    encoder: Optional[Encoder] = None,
    registry: Optional[ComponentRegistry] = None,
) -> SoftAlign:
    if not isinstance(payload, Mapping):
        raise ValueError("SoftAlign checkpoint must contain a mapping.")
    version = payload.get("format_version")
    if version != CHECKPOINT_FORMAT_VERSION:
        raise ValueError(
            f"Unsupported SoftAlign checkpoint version {version!r}; "
            f"expected {CHECKPOINT_FORMAT_VERSION!r}."
        )
    components = payload.get("components")
    if not isinstance(components, (list, tuple)) or len(components) != len(COMPONENT_ORDER):
        raise ValueError(f"SoftAlign checkpoint must list components {COMPONENT_ORDER}.")
    for expected, entry in zip(COMPONENT_ORDER, components):
        if entry is not None and entry.get("name") != expected:
            raise ValueError(
                f"SoftAlign checkpoint component out of order: expected {expected!r}, "
                f"got {entry.get('name')!r}."
            )
    if components[0] is None or components[1] is None or components[3] is None:
        raise ValueError("SoftAlign checkpoint is missing a required component.")

    registry = registry or default_registry()
    attentor = _build_component(components[0], registry)
    decoder = _build_component(components[1], registry)
    in_combiner = None if components[2] is None else _build_component(components[2], registry)
    config = build_soft_align_config(payload.get("config"))
    return SoftAlign(
        config,
        attentor=attentor,  # type: ignore[arg-type]
        decoder=decoder,  # type: ignore[arg-type]
        in_combiner=in_combiner,  # type: ignore[arg-type]
        encoder=encoder,
        init_query=torch.as_tensor(components[3]["tensor"]),
    )


def _component_entry(name: str, module: nn.Module, registry: ComponentRegistry) -> Dict[str, Any]:
    config = getattr(module, "config", None)
    if config is None:
        raise ValueError(f"Component {name} has no config to persist.")
    return {
        "name": name,
        "kind": registry.kind_of(module),
        "config": asdict(config),
        "state": {key: value.detach().cpu() for key, value in module.state_dict().items()},
    }


def _build_component(entry: Mapping[str, Any], registry: ComponentRegistry) -> nn.Module:
    module = registry.build(entry["kind"], entry["config"])
    module.load_state_dict(entry["state"])
    return module


__all__ = [
    "CHECKPOINT_FORMAT_VERSION",
    "COMPONENT_ORDER",
    "ComponentKind",
    "ComponentRegistry",
    "default_registry",
    "load_soft_align",
    "save_soft_align",
    "soft_align_from_state",
    "soft_align_state",
]
