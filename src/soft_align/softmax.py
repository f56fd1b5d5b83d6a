"""Numerically stable softmax over variable-length sequences."""

from __future__ import annotations

from typing import List, Sequence

import torch

from .errors import EmptyBatchError

# Seed for the running maximum. Finite so that absent positions never produce inf - inf.
SOFTMAX_SENTINEL = -10000.0
# Lower bound on a lane's exponential sum before it is inverted.
SOFTMAX_EPSILON = 1e-30


def seq_softmax(lanes: Sequence[torch.Tensor]) -> List[torch.Tensor]:
    """Apply a softmax to each lane, treating every timestep as one component.

    Parameters
    ----------
    lanes:
        One 1-D tensor per lane holding a scalar per timestep. Lanes may have
        different lengths.

    Returns
    -------
    list of tensors shaped like ``lanes`` whose values are non-negative and sum
    to one within each non-empty lane.
    """

    if len(lanes) == 0:
        raise EmptyBatchError("seq_softmax requires at least one lane.")
    lengths = [int(lane.size(0)) for lane in lanes]
    if max(lengths) == 0:
        return [lane.clone() for lane in lanes]

    padded = _pad(lanes, max(lengths))
    present = torch.arange(padded.size(1), device=padded.device)[None, :] < torch.tensor(
        lengths, device=padded.device
    )[:, None]

    maxes = _running_max(padded.detach(), present)
    exps = torch.exp(padded - maxes[:, None])
    exps = torch.where(present, exps, torch.zeros_like(exps))
    sums = exps.sum(dim=1)
    scalers = torch.ones_like(sums) / sums.clamp_min(SOFTMAX_EPSILON)
    scaled = exps * scalers[:, None]
    return [scaled[index, :length] for index, length in enumerate(lengths)]


def _pad(lanes: Sequence[torch.Tensor], width: int) -> torch.Tensor:
    # Out-of-place so forward-mode tangents pass through unchanged.
    return torch.stack(
        [
            torch.cat([lane, lane.new_full((width - lane.size(0),), SOFTMAX_SENTINEL)])
            for lane in lanes
        ],
        dim=0,
    )


def _running_max(padded: torch.Tensor, present: torch.Tensor) -> torch.Tensor:
    maxes = torch.full(
        (padded.size(0),), SOFTMAX_SENTINEL, dtype=padded.dtype, device=padded.device
    )
    for step in range(padded.size(1)):
        maxes = torch.where(present[:, step], torch.maximum(maxes, padded[:, step]), maxes)
    return maxes


__all__ = ["SOFTMAX_EPSILON", "SOFTMAX_SENTINEL", "seq_softmax"]
