"""Recurrent decoder contract plus reference decoder and encoder modules."""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import torch
from torch import nn
from torch.nn.utils.rnn import pack_padded_sequence, pad_packed_sequence, pad_sequence


class RecurrentBlock(nn.Module, abc.ABC):
    """Single-step recurrent state machine driven by the interfacer block.

    States are ``[batch, state_size]`` tensors and the batch may only shrink
    between steps (lanes are added at the first step only). Backward
    operations come from autograd over :meth:`start_state` and :meth:`step`;
    parameters are whatever the module registers, possibly none.
    """

    state_size: int
    input_size: int
    output_size: int

    @abc.abstractmethod
    def start_state(self, batch_size: int) -> torch.Tensor:
        """Return the start state for ``batch_size`` lanes."""

    @abc.abstractmethod
    def step(self, state: torch.Tensor, inputs: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        """Advance every lane by one timestep and return ``(new_state, outputs)``."""

    def forward(  # type: ignore[override]
        self, state: torch.Tensor, inputs: torch.Tensor
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        return self.step(state, inputs)


@dataclass(slots=True)
class LSTMBlockConfig:
    input_size: int
    hidden_size: int
    output_size: int


class LSTMBlock(RecurrentBlock):
    """LSTM cell with a learned start state and a linear output projection."""

    def __init__(self, config: LSTMBlockConfig) -> None:
        super().__init__()
        self.config = config
        self.input_size = config.input_size
        self.output_size = config.output_size
        self.state_size = 2 * config.hidden_size
        self.cell = nn.LSTMCell(config.input_size, config.hidden_size)
        self.projection = nn.Linear(config.hidden_size, config.output_size)
        self.initial = nn.Parameter(torch.zeros(self.state_size))

    def start_state(self, batch_size: int) -> torch.Tensor:
        return self.initial.unsqueeze(0).expand(batch_size, -1)

    def step(self, state: torch.Tensor, inputs: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        hidden, cell = state.split(self.config.hidden_size, dim=-1)
        hidden, cell = self.cell(inputs, (hidden, cell))
        return torch.cat([hidden, cell], dim=-1), self.projection(hidden)


@dataclass(slots=True)
class LaneEncoderConfig:
    input_size: int
    hidden_size: int
    num_layers: int = 1
    bidirectional: bool = False


class LaneEncoder(nn.Module):
    """Runs an ``nn.LSTM`` over every lane of a variable-length batch."""

    def __init__(self, config: LaneEncoderConfig) -> None:
        super().__init__()
        self.config = config
        self.rnn = nn.LSTM(
            config.input_size,
            config.hidden_size,
            num_layers=config.num_layers,
            batch_first=True,
            bidirectional=config.bidirectional,
        )

    @property
    def output_size(self) -> int:
        return self.config.hidden_size * (2 if self.config.bidirectional else 1)

    def forward(self, lanes: Sequence[torch.Tensor]) -> List[torch.Tensor]:  # type: ignore[override]
        lengths = [int(lane.size(0)) for lane in lanes]
        padded = pad_sequence(list(lanes), batch_first=True)
        packed = pack_padded_sequence(padded, lengths, batch_first=True, enforce_sorted=False)
        outputs, _ = self.rnn(packed)
        outputs, _ = pad_packed_sequence(outputs, batch_first=True)
        return [outputs[index, :length] for index, length in enumerate(lengths)]


__all__ = [
    "LSTMBlock",
    "LSTMBlockConfig",
    "LaneEncoder",
    "LaneEncoderConfig",
    "RecurrentBlock",
]
