"""Background producer streaming decoder outputs for a single input sequence."""

from __future__ import annotations

import logging
import queue
import threading
import weakref
from dataclasses import dataclass
from typing import Any, Iterator, Optional

import torch

from .errors import EmptyLaneError

LOGGER = logging.getLogger("soft align.generation")


@dataclass(frozen=True, slots=True)
class _Failure:
    error: BaseException


@dataclass(slots=True)
class _Progress:
    produced: int = 0


class StreamingGeneration(Iterator[torch.Tensor]):
    """Iterator over an endless stream of decoder outputs.

    A daemon thread encodes the sequence once and then steps the decoder with
    a zero input per step. At most one produced vector waits for the consumer.
    Call :meth:`close` (or leave the ``with`` block) to stop the producer; no
    vector is handed over once cancellation has been observed. Dropping the
    last reference to the iterator cancels it too, since the producer thread
    only holds the queue, the events and the model.
    """

    def __init__(self, model: Any, sequence: torch.Tensor, *, poll_interval: float = 0.05) -> None:
        if sequence.dim() != 2:
            raise ValueError("StreamingGeneration expects a [steps, features] sequence.")
        if sequence.size(0) == 0:
            raise EmptyLaneError(0)
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive.")
        self._poll_interval = poll_interval
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=1)
        self._cancelled = threading.Event()
        self._finished = threading.Event()
        self._progress = _Progress()
        self._thread = threading.Thread(
            target=_produce,
            args=(
                model,
                sequence.detach(),
                self._queue,
                self._cancelled,
                self._finished,
                self._progress,
                poll_interval,
            ),
            name="soft-align-generation",
            daemon=True,
        )
        self._finalizer = weakref.finalize(self, self._cancelled.set)
        self._thread.start()

    @property
    def produced(self) -> int:
        """Number of vectors handed to the consumer queue so far."""

        return self._progress.produced

    @property
    def alive(self) -> bool:
        return self._thread.is_alive()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def __iter__(self) -> "StreamingGeneration":
        return self

    def __next__(self) -> torch.Tensor:
        while not self._cancelled.is_set():
            try:
                item = self._queue.get(timeout=self._poll_interval)
            except queue.Empty:
                if self._finished.is_set() and self._queue.empty():
                    raise StopIteration
                continue
            if isinstance(item, _Failure):
                raise item.error
            return item
        raise StopIteration

    def cancel(self) -> None:
        """Signal the producer to stop and drop any pending vector."""

        if not self._cancelled.is_set():
            self._cancelled.set()
            LOGGER.debug("generation_cancelled | produced=%d", self._progress.produced)
        _drain(self._queue)

    def close(self, timeout: Optional[float] = 5.0) -> bool:
        """Cancel and wait for the producer thread. Returns ``True`` once it has exited."""

        self.cancel()
        self._thread.join(timeout)
        _drain(self._queue)
        return not self._thread.is_alive()

    def __enter__(self) -> "StreamingGeneration":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def _produce(
    model: Any,
    sequence: torch.Tensor,
    pending: "queue.Queue[Any]",
    cancelled: threading.Event,
    finished: threading.Event,
    progress: _Progress,
    poll_interval: float,
) -> None:
    try:
        with torch.no_grad():
            encoded = model.encode([sequence])
            block = model.block(encoded)
            state = block.start_state(1)
            placeholder = sequence.new_zeros(1, model.config.input_size)
            skip_first = bool(model.config.priming)
            while not cancelled.is_set():
                result = block.step(state, placeholder)
                state = result.state
                if skip_first:
                    skip_first = False
                    continue
                if not _hand_off(pending, cancelled, result.outputs[0], poll_interval):
                    break
                progress.produced += 1
    except Exception as exc:
        LOGGER.warning("generation_failed | error=%s", exc)
        _hand_off(pending, cancelled, _Failure(exc), poll_interval)
    finally:
        finished.set()
        LOGGER.debug("generation_stopped | produced=%d", progress.produced)


def _hand_off(
    pending: "queue.Queue[Any]", cancelled: threading.Event, item: Any, poll_interval: float
) -> bool:
    while not cancelled.is_set():
        try:
            pending.put(item, timeout=poll_interval)
        except queue.Full:
            continue
        return True
    return False


def _drain(pending: "queue.Queue[Any]") -> None:
    while True:
        try:
            pending.get_nowait()
        except queue.Empty:
            return


__all__ = ["StreamingGeneration"]
