"""Bahdanau-style soft attention: focus functions, interfacer block and SoftAlign."""

from __future__ import annotations

import importlib
from typing import Dict, Iterable, Tuple

__all__ = [
    "AlignRun",
    "AlignTangents",
    "BlockRun",
    "Combiner",
    "CombinerConfig",
    "ComponentRegistry",
    "ConsumedRecordError",
    "ContractViolation",
    "EmptyBatchError",
    "EmptyLaneError",
    "FocusFunction",
    "GradientAccumulator",
    "InitialState",
    "InterfacerBlock",
    "LSTMBlock",
    "LSTMBlockConfig",
    "LaneCountMismatchError",
    "LaneEncoder",
    "LaneEncoderConfig",
    "RecurrentBlock",
    "RunningState",
    "SoftAlign",
    "SoftAlignConfig",
    "StreamingGeneration",
    "UnboundResourceError",
    "apply_block",
    "build_soft_align_config",
    "default_registry",
    "load_soft_align",
    "load_soft_align_config",
    "save_soft_align",
    "seq_softmax",
]

_EXPORTS: Dict[str, Tuple[str, ...]] = {
    "soft_align": ("AlignRun", "AlignTangents", "SoftAlign"),
    "interfacer": ("BlockRun", "InitialState", "InterfacerBlock", "RunningState", "apply_block"),
    "combiner": ("Combiner", "CombinerConfig"),
    "checkpoint": ("ComponentRegistry", "default_registry", "load_soft_align", "save_soft_align"),
    "errors": (
        "ConsumedRecordError",
        "ContractViolation",
        "EmptyBatchError",
        "EmptyLaneError",
        "LaneCountMismatchError",
        "UnboundResourceError",
    ),
    "focus": ("FocusFunction",),
    "gradients": ("GradientAccumulator",),
    "recurrent": (
        "LSTMBlock",
        "LSTMBlockConfig",
        "LaneEncoder",
        "LaneEncoderConfig",
        "RecurrentBlock",
    ),
    "config": ("SoftAlignConfig", "build_soft_align_config", "load_soft_align_config"),
    "generation": ("StreamingGeneration",),
    "softmax": ("seq_softmax",),
}


_OWNERS: Dict[str, str] = {
    symbol: module_name for module_name, symbols in _EXPORTS.items() for symbol in symbols
}


def __getattr__(name: str):
    owner = _OWNERS.get(name)
    if owner is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    value = getattr(importlib.import_module(f"{__name__}.{owner}"), name)
    globals()[name] = value
    return value


def __dir__() -> Iterable[str]:
    return sorted(set(globals()) | set(__all__))
