"""Gradient accumulator keyed by tensor identity."""

from __future__ import annotations

from typing import Dict, Iterator, Optional, Tuple

import torch


class GradientAccumulator:
    """Maps differentiable tensors to their accumulated gradients.

    Tensors are keyed by identity, not value, so two equal tensors never share
    an entry. One accumulator is scoped to a single backward pass.
    """

    def __init__(self) -> None:
        self._entries: Dict[int, Tuple[torch.Tensor, torch.Tensor]] = {}

    def add(self, variable: torch.Tensor, gradient: torch.Tensor) -> None:
        key = id(variable)
        existing = self._entries.get(key)
        if existing is None:
            self._entries[key] = (variable, gradient.detach().clone())
        else:
            existing[1].add_(gradient.detach())

    def get(self, variable: torch.Tensor) -> Optional[torch.Tensor]:
        entry = self._entries.get(id(variable))
        return None if entry is None else entry[1]

    def pop(self, variable: torch.Tensor) -> Optional[torch.Tensor]:
        """Remove ``variable`` and return its gradient, or ``None`` when absent."""

        entry = self._entries.pop(id(variable), None)
        return None if entry is None else entry[1]

    def __contains__(self, variable: object) -> bool:
        return id(variable) in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[torch.Tensor]:
        for variable, _ in self._entries.values():
            yield variable

    def items(self) -> Iterator[Tuple[torch.Tensor, torch.Tensor]]:
        yield from self._entries.values()

    def apply_to_grads(self) -> None:
        """Add every accumulated gradient onto the ``.grad`` of its leaf tensor."""

        for variable, gradient in self._entries.values():
            if not variable.is_leaf or not variable.requires_grad:
                continue
            if variable.grad is None:
                variable.grad = gradient.clone()
            else:
                variable.grad.add_(gradient)


__all__ = ["GradientAccumulator"]
