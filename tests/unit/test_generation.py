"""Streaming generation: agreement with batch runs, cancellation and failures."""

from __future__ import annotations

import gc
import time

import pytest
import torch

from soft_align.errors import EmptyLaneError

from ._models import ENCODER_INPUT, build_model


def _take(stream, count: int):
    return [next(stream) for _ in range(count)]


@pytest.mark.parametrize("policy", ["learned", "priming"])
def test_stream_matches_batch_run(policy: str) -> None:
    model = build_model(query_policy=policy)
    sequence = torch.randn(4, ENCODER_INPUT)
    steps = 5
    offset = 1 if policy == "priming" else 0
    with torch.no_grad():
        expected = model.run([sequence], lengths=[steps + offset]).outputs[0]

    with model.generate(sequence, poll_interval=0.01) as stream:
        streamed = _take(stream, steps)

    assert len(streamed) == steps
    for row, vector in enumerate(streamed):
        assert torch.allclose(vector, expected[row], atol=1e-5)


def test_close_stops_the_producer() -> None:
    model = build_model()
    stream = model.generate(torch.randn(3, ENCODER_INPUT), poll_interval=0.01)
    _take(stream, 2)
    assert stream.close() is True
    assert not stream.alive
    assert stream.cancelled
    with pytest.raises(StopIteration):
        next(stream)
    assert list(stream) == []


def test_producer_waits_for_the_consumer() -> None:
    model = build_model()
    stream = model.generate(torch.randn(3, ENCODER_INPUT), poll_interval=0.01)
    try:
        time.sleep(0.2)
        assert stream.produced <= 1
        next(stream)
        time.sleep(0.2)
        assert stream.produced <= 2
    finally:
        assert stream.close()


def test_producer_failure_reaches_the_consumer() -> None:
    model = build_model()

    def broken_encoder(lanes):
        raise RuntimeError("encoder exploded")

    del model.encoder
    model.encoder = broken_encoder
    stream = model.generate(torch.randn(3, ENCODER_INPUT), poll_interval=0.01)
    with pytest.raises(RuntimeError, match="encoder exploded"):
        next(stream)
    assert stream.close()


def test_invalid_sequences_are_rejected() -> None:
    model = build_model()
    with pytest.raises(EmptyLaneError):
        model.generate(torch.zeros(0, ENCODER_INPUT))
    with pytest.raises(ValueError):
        model.generate(torch.zeros(ENCODER_INPUT))
    with pytest.raises(ValueError):
        model.generate(torch.zeros(2, ENCODER_INPUT), poll_interval=0)


def test_dropping_the_stream_stops_the_producer() -> None:
    model = build_model()
    stream = model.generate(torch.randn(3, ENCODER_INPUT), poll_interval=0.01)
    next(stream)
    producer = stream._thread
    del stream
    gc.collect()
    producer.join(timeout=5.0)
    assert not producer.is_alive()
