"""Feed-forward network fusing two input vectors into one output."""

from __future__ import annotations

from dataclasses import dataclass

import torch
from torch import nn


@dataclass(slots=True)
class CombinerConfig:
    first_size: int
    second_size: int
    hidden_size: int
    out_size: int


class Combiner(nn.Module):
    """Two independent projections summed, then ``tanh`` and an output projection.

    Equivalent to projecting the concatenation of both inputs, without ever
    materialising the concatenated vector. As an attentor the first input is
    the query and the second the encoded vector; as an input combiner the
    first input is the context vector and the second the decoder input.
    """

    def __init__(self, config: CombinerConfig) -> None:
        super().__init__()
        self.config = config
        self.in_trans = nn.ModuleList(
            [
                nn.Linear(config.first_size, config.hidden_size),
                nn.Linear(config.second_size, config.hidden_size),
            ]
        )
        self.out_trans = nn.Sequential(nn.Tanh(), nn.Linear(config.hidden_size, config.out_size))

    @property
    def out_size(self) -> int:
        return self.config.out_size

    def forward(self, first: torch.Tensor, second: torch.Tensor) -> torch.Tensor:  # type: ignore[override]
        return self.out_trans(self.in_trans[0](first) + self.in_trans[1](second))


__all__ = ["Combiner", "CombinerConfig"]
