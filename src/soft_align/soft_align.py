"""Attention-based sequence-to-sequence alignment (https://arxiv.org/abs/1409.0473).

An encoder turns each input sequence into a sequence of vectors. A decoder
block then produces the output sequence one step at a time, focusing on
different parts of the encoded sequence at every step through queries it
emits itself.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import torch
import torch.autograd.forward_ad as fwAD
from torch import nn
from torch.func import functional_call

from .combiner import Combiner
from .config import SoftAlignConfig
from .errors import ContractViolation, EmptyBatchError, EmptyLaneError
from .focus import FocusFunction
from .generation import StreamingGeneration
from .gradients import GradientAccumulator
from .interfacer import BlockRun, InterfacerBlock, apply_block
from .recurrent import RecurrentBlock

LOGGER = logging.getLogger("soft align.orchestrator")

Encoder = Callable[[Sequence[torch.Tensor]], Sequence[torch.Tensor]]


class SoftAlign(nn.Module):
    """Encoder, attentor and decoder wired into one alignment model.

    Attributes
    ----------
    attentor:
        Scores ``(query, encoded vector)`` pairs. Its output is an energy (a
        log-domain weight) for the encoded vector.
    decoder:
        Recurrent block whose outputs start with the next query.
    in_combiner:
        Optional combiner of ``(context, decoder input)``. Without one the
        decoder sees their concatenation.
    init_query:
        Query of the first decoding step under the ``"learned"`` policy.
    encoder:
        Supplied by the caller and never persisted with the model.
    """

    def __init__(
        self,
        config: SoftAlignConfig,
        *,
        attentor: Combiner,
        decoder: RecurrentBlock,
        in_combiner: Optional[Combiner] = None,
        encoder: Optional[Encoder] = None,
        init_query: Optional[torch.Tensor] = None,
    ) -> None:
        super().__init__()
        if decoder.output_size <= config.query_size:
            raise ValueError(
                f"Decoder output size {decoder.output_size} must exceed query_size "
                f"{config.query_size}."
            )
        self.config = config
        self.attentor = attentor
        self.decoder = decoder
        self.in_combiner = in_combiner
        self.encoder = encoder
        if init_query is None:
            init_query = torch.zeros(config.query_size)
        if init_query.shape != (config.query_size,):
            raise ValueError(
                f"init_query must have shape ({config.query_size},), got {tuple(init_query.shape)}."
            )
        self.init_query = nn.Parameter(init_query.detach().clone(), requires_grad=not config.priming)

    def alignment_parameters(self) -> List[nn.Parameter]:
        """Every parameter except the encoder's."""

        excluded = set()
        if isinstance(self.encoder, nn.Module):
            excluded = {id(param) for param in self.encoder.parameters()}
        return [param for param in self.parameters() if id(param) not in excluded]

    def encode(self, inputs: Sequence[torch.Tensor]) -> List[torch.Tensor]:
        _check_lanes(inputs, what="input")
        if self.encoder is None:
            raise RuntimeError("SoftAlign has no encoder; assign one before encoding.")
        encoded = list(self.encoder(inputs))
        if len(encoded) != len(inputs):
            raise ValueError(f"Encoder returned {len(encoded)} lanes for {len(inputs)} inputs.")
        _check_lanes(encoded, what="encoded")
        return encoded

    def block(self, encoded: Sequence[torch.Tensor]) -> InterfacerBlock:
        """Wrap the decoder with one focus function per encoded lane.

        The block must first be stepped with exactly ``len(encoded)`` lanes.
        """

        _check_lanes(encoded, what="encoded")
        resources = [
            FocusFunction(lane, self.attentor, batch_size=self.config.focus_batch_size)
            for lane in encoded
        ]
        return InterfacerBlock(
            resources,
            self.decoder,
            query_size=self.config.query_size,
            start_query=None if self.config.priming else self.init_query,
            in_combiner=self.in_combiner,
        )

    def run(
        self,
        inputs: Sequence[torch.Tensor],
        decoder_inputs: Optional[Sequence[torch.Tensor]] = None,
        *,
        lengths: Optional[Sequence[int]] = None,
    ) -> "AlignRun":
        """Decode every lane of ``inputs``.

        Either ``decoder_inputs`` (one ``[steps, input_size]`` tensor per lane)
        or ``lengths`` (zero inputs of ``config.input_size``) set how many
        decoding steps each lane takes. Under the priming policy each output
        lane is one step shorter than its decoder input.
        """

        recording = torch.is_grad_enabled()
        try:
            decoder_inputs = self._decoder_inputs(inputs, decoder_inputs, lengths)
            with torch.set_grad_enabled(recording and self.config.encoder_gradients):
                encoded = self.encode(inputs)
        except ContractViolation as exc:
            LOGGER.warning("soft_align_rejected | lanes=%d | reason=%s", len(inputs), exc)
            raise

        if recording and self.config.encoder_gradients:
            bound = [lane.detach().requires_grad_(True) for lane in encoded]
        else:
            bound = [lane.detach() for lane in encoded]
        block_run = apply_block(self.block(bound), decoder_inputs)

        outputs = block_run.outputs
        if self.config.priming:
            outputs = [lane[1:] for lane in outputs]
        if recording:
            outputs = [lane.detach().requires_grad_(True) for lane in outputs]
        LOGGER.debug(
            "soft_align_run | lanes=%d | steps=%d | policy=%s",
            len(inputs),
            len(block_run.steps),
            self.config.query_policy,
        )
        return AlignRun(
            model=self,
            inputs=tuple(inputs),
            outputs=outputs,
            encoded=encoded,
            bound=bound,
            block_run=block_run,
        )

    def forward(  # type: ignore[override]
        self,
        inputs: Sequence[torch.Tensor],
        decoder_inputs: Optional[Sequence[torch.Tensor]] = None,
        *,
        lengths: Optional[Sequence[int]] = None,
    ) -> "AlignRun":
        return self.run(inputs, decoder_inputs, lengths=lengths)

    def generate(self, sequence: torch.Tensor, *, poll_interval: float = 0.05) -> StreamingGeneration:
        """Stream outputs for a single input sequence until cancelled."""

        return StreamingGeneration(self, sequence, poll_interval=poll_interval)

    def directional_derivative(
        self,
        inputs: Sequence[torch.Tensor],
        decoder_inputs: Optional[Sequence[torch.Tensor]] = None,
        *,
        lengths: Optional[Sequence[int]] = None,
        direction: Optional[Mapping[str, torch.Tensor]] = None,
        input_tangents: Optional[Sequence[torch.Tensor]] = None,
        decoder_input_tangents: Optional[Sequence[torch.Tensor]] = None,
    ) -> "AlignTangents":
        """Outputs of :meth:`run` and their derivative along a direction.

        ``direction`` maps names from :meth:`named_parameters` to tangents of
        the same shape; parameters left out do not move. ``input_tangents`` and
        ``decoder_input_tangents`` move the input lanes. The decoder side runs
        in forward mode, so each lane's query tangent is carried from one step
        into the next. Encoder tangents come from a double backward pass since
        the fused recurrent kernels have no forward-mode rules.
        """

        direction = dict(direction or {})
        parameters = dict(self.named_parameters())
        unknown = sorted(set(direction) - set(parameters))
        if unknown:
            raise ValueError(f"Unknown parameters in direction: {', '.join(unknown)}")
        for name, tangent in direction.items():
            if tangent.shape != parameters[name].shape:
                raise ValueError(
                    f"Tangent for {name} has shape {tuple(tangent.shape)}, expected "
                    f"{tuple(parameters[name].shape)}."
                )

        decoder_inputs = self._decoder_inputs(inputs, decoder_inputs, lengths)
        decoder_tangents = _lane_tangents(decoder_inputs, decoder_input_tangents, what="decoder input")
        encoder_direction = [
            (parameters[name], tangent)
            for name, tangent in direction.items()
            if name.startswith("encoder.")
        ]
        encoded, encoded_tangents = self._encoded_tangents(inputs, input_tangents, encoder_direction)

        with torch.no_grad(), fwAD.dual_level():
            duals = {
                f"model.{name}": fwAD.make_dual(
                    parameter.detach(),
                    direction[name].to(parameter) if name in direction else torch.zeros_like(parameter),
                )
                for name, parameter in parameters.items()
                if not name.startswith("encoder.")
            }
            bound = [fwAD.make_dual(lane, tangent) for lane, tangent in zip(encoded, encoded_tangents)]
            lanes = [
                fwAD.make_dual(lane.detach(), tangent)
                for lane, tangent in zip(decoder_inputs, decoder_tangents)
            ]
            dual_outputs = functional_call(_DecoderPass(self), duals, (bound, lanes))
            outputs: List[torch.Tensor] = []
            tangents: List[torch.Tensor] = []
            for lane in dual_outputs:
                primal, tangent = fwAD.unpack_dual(lane)
                outputs.append(primal.clone())
                tangents.append(torch.zeros_like(primal) if tangent is None else tangent.clone())

        if self.config.priming:
            outputs = [lane[1:] for lane in outputs]
            tangents = [lane[1:] for lane in tangents]
        LOGGER.debug(
            "soft_align_tangents | lanes=%d | directions=%d", len(inputs), len(direction)
        )
        return AlignTangents(outputs=outputs, tangents=tangents)

    def _encoded_tangents(
        self,
        inputs: Sequence[torch.Tensor],
        input_tangents: Optional[Sequence[torch.Tensor]],
        direction: Sequence[Tuple[nn.Parameter, torch.Tensor]],
    ) -> Tuple[List[torch.Tensor], List[torch.Tensor]]:
        lane_tangents = _lane_tangents(inputs, input_tangents, what="input")
        if input_tangents is None and not direction:
            with torch.no_grad():
                encoded = self.encode(inputs)
            return encoded, [torch.zeros_like(lane) for lane in encoded]

        lanes = [lane.detach().requires_grad_(True) for lane in inputs]
        variables: List[torch.Tensor] = list(lanes)
        tangents: List[torch.Tensor] = list(lane_tangents)
        for parameter, tangent in direction:
            if not parameter.requires_grad:
                raise ValueError("Frozen encoder parameters cannot be moved along a direction.")
            variables.append(parameter)
            tangents.append(tangent.to(parameter))

        # The pullback is linear in its cotangents; differentiating it again
        # with respect to them pushes the tangents forward.
        with torch.enable_grad():
            encoded = self.encode(lanes)
            cotangents = [torch.zeros_like(lane, requires_grad=True) for lane in encoded]
            pulled = torch.autograd.grad(
                encoded, variables, cotangents, create_graph=True, allow_unused=True
            )
            pairs = [
                (grad, tangent)
                for grad, tangent in zip(pulled, tangents)
                if grad is not None and grad.requires_grad
            ]
            pushed: Sequence[Optional[torch.Tensor]] = [None] * len(encoded)
            if pairs:
                pushed = torch.autograd.grad(
                    [grad for grad, _ in pairs],
                    cotangents,
                    [tangent for _, tangent in pairs],
                    allow_unused=True,
                )
        encoded_tangents = [
            torch.zeros_like(lane).detach() if tangent is None else tangent.detach()
            for lane, tangent in zip(encoded, pushed)
        ]
        return [lane.detach() for lane in encoded], encoded_tangents

    def _decoder_inputs(
        self,
        inputs: Sequence[torch.Tensor],
        decoder_inputs: Optional[Sequence[torch.Tensor]],
        lengths: Optional[Sequence[int]],
    ) -> List[torch.Tensor]:
        if (decoder_inputs is None) == (lengths is None):
            raise ValueError("Pass exactly one of decoder_inputs or lengths.")
        if lengths is not None:
            reference = inputs[0] if len(inputs) else torch.zeros(0)
            decoder_inputs = [
                reference.new_zeros(int(length), self.config.input_size) for length in lengths
            ]
        if len(decoder_inputs) != len(inputs):
            raise ValueError(
                f"Got {len(decoder_inputs)} decoder input lanes for {len(inputs)} input lanes."
            )
        _check_lanes(decoder_inputs, what="decoder input")
        return list(decoder_inputs)


@dataclass(slots=True)
class AlignRun:
    """Result of :meth:`SoftAlign.run`, able to propagate gradients once."""

    model: SoftAlign
    inputs: tuple
    outputs: List[torch.Tensor]
    encoded: List[torch.Tensor]
    bound: List[torch.Tensor]
    block_run: BlockRun

    def backward(
        self,
        output_grads: Optional[Sequence[Optional[torch.Tensor]]] = None,
        *,
        apply_to_grads: bool = False,
    ) -> GradientAccumulator:
        """Back-propagate ``output_grads`` (or the outputs' ``.grad``) through the run.

        Returns an accumulator holding gradients for the model parameters,
        the encoder parameters and any input tensors that require grad.
        """

        if not self.block_run.recorded:
            raise RuntimeError("AlignRun was produced under torch.no_grad(); nothing to backward.")
        if output_grads is None:
            output_grads = [
                lane.grad if lane.grad is not None else torch.zeros_like(lane)
                for lane in self.outputs
            ]
        if len(output_grads) != len(self.outputs):
            raise ValueError(f"Expected {len(self.outputs)} output gradients, got {len(output_grads)}.")
        grads: List[Optional[torch.Tensor]] = list(output_grads)
        if self.model.config.priming:
            grads = [
                None
                if grad is None
                else torch.cat([grad.new_zeros(1, grad.size(-1)), grad], dim=0)
                for grad in grads
            ]

        accumulator = self.block_run.backward(grads)
        self._backward_encoder(accumulator)
        if apply_to_grads:
            accumulator.apply_to_grads()
        return accumulator

    def _backward_encoder(self, accumulator: GradientAccumulator) -> None:
        targets: List[torch.Tensor] = []
        upstream: List[torch.Tensor] = []
        for original, leaf in zip(self.encoded, self.bound):
            grad = accumulator.pop(leaf)
            if grad is not None and original.requires_grad:
                targets.append(original)
                upstream.append(grad)
        if not targets:
            return
        seen: Dict[int, torch.Tensor] = {}
        encoder = self.model.encoder
        candidates: List[torch.Tensor] = list(self.inputs)
        if isinstance(encoder, nn.Module):
            candidates = list(encoder.parameters()) + candidates
        for tensor in candidates:
            if tensor.requires_grad and id(tensor) not in seen:
                seen[id(tensor)] = tensor
        variables = list(seen.values())
        if not variables:
            return
        gradients = torch.autograd.grad(targets, variables, upstream, allow_unused=True)
        for variable, gradient in zip(variables, gradients):
            if gradient is not None:
                accumulator.add(variable, gradient)


@dataclass(slots=True)
class AlignTangents:
    """Outputs of a forward-mode pass and their directional derivatives, lane by lane."""

    outputs: List[torch.Tensor]
    tangents: List[torch.Tensor]


class _DecoderPass(nn.Module):
    """Decoder side of a model as one module call, so ``functional_call`` can swap its parameters."""

    def __init__(self, model: SoftAlign) -> None:
        super().__init__()
        self.model = model

    def forward(  # type: ignore[override]
        self, encoded: Sequence[torch.Tensor], decoder_inputs: Sequence[torch.Tensor]
    ) -> List[torch.Tensor]:
        return apply_block(self.model.block(encoded), decoder_inputs).outputs


def _lane_tangents(
    lanes: Sequence[torch.Tensor],
    tangents: Optional[Sequence[torch.Tensor]],
    *,
    what: str,
) -> List[torch.Tensor]:
    if tangents is None:
        return [torch.zeros_like(lane).detach() for lane in lanes]
    if len(tangents) != len(lanes):
        raise ValueError(f"Got {len(tangents)} {what} tangents for {len(lanes)} lanes.")
    for index, (lane, tangent) in enumerate(zip(lanes, tangents)):
        if tangent.shape != lane.shape:
            raise ValueError(
                f"{what} tangent {index} has shape {tuple(tangent.shape)}, "
                f"expected {tuple(lane.shape)}."
            )
    return [tangent.detach().to(lane) for lane, tangent in zip(lanes, tangents)]


def _check_lanes(lanes: Sequence[torch.Tensor], *, what: str) -> None:
    if len(lanes) == 0:
        raise EmptyBatchError(f"Cannot align an empty batch of {what} lanes.")
    for index, lane in enumerate(lanes):
        if lane.dim() != 2:
            raise ValueError(f"{what} lane {index} must be shaped [steps, features].")
        if lane.size(0) == 0:
            raise EmptyLaneError(index, what=what)


__all__ = ["AlignRun", "AlignTangents", "Encoder", "SoftAlign"]
