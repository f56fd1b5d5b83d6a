"""SoftAlign orchestration: lengths, priming, gradients and contract checks."""

from __future__ import annotations

import pytest
import torch

from soft_align.errors import EmptyBatchError, EmptyLaneError
from soft_align.gradients import GradientAccumulator
from soft_align.interfacer import apply_block

from ._gradcheck import assert_gradients_match
from ._models import DECODER_INPUT, ENCODER_INPUT, VISIBLE_SIZE, build_model, random_lanes

INPUT_LENGTHS = [3, 2, 3]
DECODER_LENGTHS = [4, 2, 1]


@pytest.mark.parametrize("policy, offset", [("learned", 0), ("priming", 1)])
def test_output_lengths_follow_query_policy(policy: str, offset: int) -> None:
    model = build_model(query_policy=policy)
    run = model.run(
        random_lanes(INPUT_LENGTHS, ENCODER_INPUT),
        random_lanes(DECODER_LENGTHS, DECODER_INPUT),
    )
    assert [lane.size(0) for lane in run.outputs] == [n - offset for n in DECODER_LENGTHS]
    assert all(lane.size(1) == VISIBLE_SIZE for lane in run.outputs)


def test_lengths_only_run_uses_zero_decoder_inputs() -> None:
    model = build_model()
    inputs = random_lanes(INPUT_LENGTHS, ENCODER_INPUT)
    with torch.no_grad():
        by_lengths = model.run(inputs, lengths=DECODER_LENGTHS)
        explicit = model.run(inputs, [torch.zeros(n, DECODER_INPUT) for n in DECODER_LENGTHS])
    for got, want in zip(by_lengths.outputs, explicit.outputs):
        assert torch.allclose(got, want)


def test_priming_drops_exactly_the_first_step() -> None:
    model = build_model(query_policy="priming")
    inputs = random_lanes(INPUT_LENGTHS, ENCODER_INPUT)
    decoder_inputs = random_lanes(DECODER_LENGTHS, DECODER_INPUT)
    with torch.no_grad():
        run = model.run(inputs, decoder_inputs)
        full = model.block(model.encode(inputs))
        unprimed = apply_block(full, decoder_inputs)
    for got, want in zip(run.outputs, unprimed.outputs):
        assert torch.allclose(got, want[1:])
    assert not model.init_query.requires_grad


def _objective(model, inputs, decoder_inputs, weights):
    def objective() -> float:
        with torch.no_grad():
            run = model.run(inputs, decoder_inputs)
        return sum((out * weight).sum() for out, weight in zip(run.outputs, weights)).item()

    return objective


@pytest.mark.parametrize(
    "policy, in_combiner",
    [("learned", False), ("priming", False), ("learned", True)],
)
def test_soft_align_gradients_match_finite_differences(policy: str, in_combiner: bool, float64) -> None:
    model = build_model(query_policy=policy, in_combiner=in_combiner, focus_batch_size=2)
    inputs = random_lanes(INPUT_LENGTHS, ENCODER_INPUT, requires_grad=True)
    decoder_inputs = random_lanes(DECODER_LENGTHS, DECODER_INPUT, requires_grad=True)
    offset = 1 if policy == "priming" else 0
    weights = [torch.randn(n - offset, VISIBLE_SIZE) for n in DECODER_LENGTHS]

    accumulator = model.run(inputs, decoder_inputs).backward(weights)
    variables = [
        param for param in model.parameters() if param.requires_grad
    ] + inputs + decoder_inputs
    assert_gradients_match(
        _objective(model, inputs, decoder_inputs, weights), variables, accumulator.get
    )


def test_constant_encoding_stops_gradients_at_encoder(float64) -> None:
    model = build_model(encoder_gradients=False)
    inputs = random_lanes(INPUT_LENGTHS, ENCODER_INPUT, requires_grad=True)
    decoder_inputs = random_lanes(DECODER_LENGTHS, DECODER_INPUT)
    weights = [torch.randn(n, VISIBLE_SIZE) for n in DECODER_LENGTHS]

    accumulator = model.run(inputs, decoder_inputs).backward(weights)
    assert all(param not in accumulator for param in model.encoder.parameters())
    assert all(lane not in accumulator for lane in inputs)
    assert model.attentor.in_trans[0].weight in accumulator

    variables = list(model.alignment_parameters())
    variables = [param for param in variables if param.requires_grad]
    assert_gradients_match(
        _objective(model, inputs, decoder_inputs, weights), variables, accumulator.get
    )


def test_backward_reads_output_grads_and_applies_to_parameters() -> None:
    model = build_model()
    run = model.run(
        random_lanes(INPUT_LENGTHS, ENCODER_INPUT),
        random_lanes(DECODER_LENGTHS, DECODER_INPUT),
    )
    loss = sum(lane.pow(2).sum() for lane in run.outputs)
    loss.backward()
    accumulator = run.backward(apply_to_grads=True)
    assert isinstance(accumulator, GradientAccumulator)
    weight = model.decoder.projection.weight
    assert weight.grad is not None
    assert torch.allclose(weight.grad, accumulator.get(weight))


def test_alignment_parameters_exclude_encoder() -> None:
    model = build_model()
    encoder_ids = {id(param) for param in model.encoder.parameters()}
    aligned = model.alignment_parameters()
    assert aligned
    assert not encoder_ids & {id(param) for param in aligned}
    assert any(param is model.init_query for param in aligned)


def test_empty_batch_and_empty_lanes_are_rejected() -> None:
    model = build_model()
    with pytest.raises(EmptyBatchError):
        model.run([], lengths=[])
    with pytest.raises(EmptyLaneError) as excinfo:
        model.run([torch.zeros(2, ENCODER_INPUT), torch.zeros(0, ENCODER_INPUT)], lengths=[1, 1])
    assert excinfo.value.lane == 1
    with pytest.raises(EmptyLaneError):
        model.run([torch.zeros(2, ENCODER_INPUT)], lengths=[0])


def test_decoder_inputs_and_lengths_are_exclusive() -> None:
    model = build_model()
    inputs = random_lanes([2], ENCODER_INPUT)
    with pytest.raises(ValueError):
        model.run(inputs)
    with pytest.raises(ValueError):
        model.run(inputs, random_lanes([2], DECODER_INPUT), lengths=[2])
    with pytest.raises(ValueError):
        model.run(inputs, lengths=[2, 3])


def test_missing_encoder_is_reported() -> None:
    model = build_model()
    model.encoder = None
    with pytest.raises(RuntimeError):
        model.encode(random_lanes([2], ENCODER_INPUT))


def _shift_parameters(model, direction, eps):
    with torch.no_grad():
        for name, param in model.named_parameters():
            param.add_(eps * direction[name])


@pytest.mark.parametrize(
    "policy, in_combiner",
    [("learned", False), ("priming", False), ("learned", True)],
)
def test_directional_derivative_matches_finite_differences(
    policy: str, in_combiner: bool, float64
) -> None:
    model = build_model(query_policy=policy, in_combiner=in_combiner, focus_batch_size=2)
    inputs = random_lanes(INPUT_LENGTHS, ENCODER_INPUT)
    decoder_inputs = random_lanes(DECODER_LENGTHS, DECODER_INPUT)
    direction = {name: torch.randn_like(param) for name, param in model.named_parameters()}
    input_tangents = [torch.randn_like(lane) for lane in inputs]
    decoder_tangents = [torch.randn_like(lane) for lane in decoder_inputs]

    result = model.directional_derivative(
        inputs,
        decoder_inputs,
        direction=direction,
        input_tangents=input_tangents,
        decoder_input_tangents=decoder_tangents,
    )
    with torch.no_grad():
        expected = model.run(inputs, decoder_inputs).outputs
    for got, want in zip(result.outputs, expected):
        assert torch.allclose(got, want)

    eps = 1e-6
    with torch.no_grad():
        _shift_parameters(model, direction, eps)
        plus = model.run(
            _shift_lanes(inputs, input_tangents, eps),
            _shift_lanes(decoder_inputs, decoder_tangents, eps),
        ).outputs
        _shift_parameters(model, direction, -2 * eps)
        minus = model.run(
            _shift_lanes(inputs, input_tangents, -eps),
            _shift_lanes(decoder_inputs, decoder_tangents, -eps),
        ).outputs
        _shift_parameters(model, direction, eps)

    for tangent, high, low in zip(result.tangents, plus, minus):
        assert tangent.shape == high.shape
        assert torch.allclose(tangent, (high - low) / (2 * eps), atol=1e-6, rtol=1e-4)


def _shift_lanes(lanes, tangents, eps):
    return [lane + eps * tangent for lane, tangent in zip(lanes, tangents)]


def test_directional_derivative_without_direction_is_zero() -> None:
    model = build_model()
    inputs = random_lanes(INPUT_LENGTHS, ENCODER_INPUT)
    result = model.directional_derivative(inputs, lengths=DECODER_LENGTHS)
    assert [lane.size(0) for lane in result.tangents] == DECODER_LENGTHS
    assert all(torch.count_nonzero(lane) == 0 for lane in result.tangents)


def test_directional_derivative_validates_direction() -> None:
    model = build_model()
    inputs = random_lanes([2], ENCODER_INPUT)
    with pytest.raises(ValueError, match="Unknown"):
        model.directional_derivative(inputs, lengths=[2], direction={"missing": torch.zeros(1)})
    with pytest.raises(ValueError, match="shape"):
        model.directional_derivative(inputs, lengths=[2], direction={"init_query": torch.zeros(2)})
    with pytest.raises(ValueError):
        model.directional_derivative(inputs, lengths=[2], input_tangents=[])
