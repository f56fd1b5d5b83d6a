"""Per-lane attention over an encoded sequence."""

from __future__ import annotations

from typing import Callable, Optional

import torch

from .errors import UnboundResourceError
from .softmax import seq_softmax

Scorer = Callable[[torch.Tensor, torch.Tensor], torch.Tensor]


class FocusFunction:
    """Turns a query into a context vector for one lane.

    The function is bound to the lane's encoded sequence (``[positions,
    encoded_size]``) and to a scorer shared by every lane. The scorer maps a
    batch of queries and a batch of encoded vectors to one energy per pair.

    ``batch_size`` controls how many encoded positions are scored per scorer
    call. It trades memory for fewer calls and never changes the result.
    """

    def __init__(
        self,
        encoded: Optional[torch.Tensor],
        scorer: Scorer,
        *,
        batch_size: int = 1,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("FocusFunction.batch_size must be positive.")
        if encoded is not None and encoded.dim() != 2:
            raise ValueError("FocusFunction expects an encoded sequence shaped [positions, size].")
        self.encoded = encoded
        self.scorer = scorer
        self.batch_size = batch_size

    @property
    def bound(self) -> bool:
        return self.encoded is not None

    def unbind(self) -> None:
        self.encoded = None

    def energies(self, query: torch.Tensor) -> torch.Tensor:
        encoded = self._require_encoded()
        chunks = []
        for chunk in encoded.split(self.batch_size, dim=0):
            queries = query.unsqueeze(0).expand(chunk.size(0), -1)
            chunks.append(self.scorer(queries, chunk).reshape(chunk.size(0)))
        return torch.cat(chunks, dim=0)

    def attention(self, query: torch.Tensor) -> torch.Tensor:
        """Return the attention distribution over the bound encoded positions."""

        return seq_softmax([self.energies(query)])[0]

    def focus(self, query: torch.Tensor) -> torch.Tensor:
        """Return the attention-weighted sum of the encoded vectors."""

        encoded = self._require_encoded()
        weights = self.attention(query)
        return weights @ encoded

    __call__ = focus

    def _require_encoded(self) -> torch.Tensor:
        if self.encoded is None:
            raise UnboundResourceError("FocusFunction has no encoded sequence bound.")
        return self.encoded


__all__ = ["FocusFunction", "Scorer"]
