"""Recurrent adapter that gives a decoder block per-lane attention resources.

Every timestep the :class:`InterfacerBlock` asks each lane's focus function
for a context vector using the lane's current query, feeds the context and
the real step input to the wrapped decoder, then splits the decoder output
into the next query and the visible output.

Gradients are propagated explicitly. While gradients are enabled each step
records its own graph over detached leaf tensors (the pooled query, inner
state and step input) in a :class:`StepRecord`. :meth:`BlockRun.backward`
walks the records in reverse time order, feeding the query gradient of step
``t`` back into step ``t - 1``.

Under :func:`torch.no_grad` nothing is detached, so forward-mode dual tensors
(:mod:`torch.autograd.forward_ad`) keep their tangents across steps, the
query tangent included.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

import torch

from .combiner import Combiner
from .errors import ConsumedRecordError, EmptyBatchError, EmptyLaneError, LaneCountMismatchError
from .focus import FocusFunction
from .gradients import GradientAccumulator
from .recurrent import RecurrentBlock

LOGGER = logging.getLogger("soft align.interfacer")


@dataclass(slots=True)
class InitialState:
    """Start phase: only the wrapped block's start state is known."""

    inner: torch.Tensor

    @property
    def batch_size(self) -> int:
        return int(self.inner.size(0))


@dataclass(slots=True)
class RunningState:
    """Running phase: each row carries its bound resource and current query."""

    inner: torch.Tensor
    query: torch.Tensor
    resources: Tuple[FocusFunction, ...]

    @property
    def batch_size(self) -> int:
        return int(self.inner.size(0))

    def select(self, rows: Sequence[int]) -> "RunningState":
        """Keep only ``rows``, for lanes that are still present."""

        index = torch.tensor(list(rows), dtype=torch.long, device=self.inner.device)
        return RunningState(
            inner=self.inner.index_select(0, index),
            query=self.query.index_select(0, index),
            resources=tuple(self.resources[row] for row in rows),
        )


BlockState = Union[InitialState, RunningState]


@dataclass(slots=True)
class StateGrad:
    """Upstream gradient for a running state."""

    inner: Optional[torch.Tensor] = None
    query: Optional[torch.Tensor] = None


@dataclass(slots=True)
class StartRecord:
    """Graph-attached start state and start query of a run."""

    inner: torch.Tensor
    query: torch.Tensor


@dataclass(slots=True)
class StepRecord:
    """Graph of one forward step, consumed once by the backward pass."""

    query: torch.Tensor
    inner: torch.Tensor
    inputs: torch.Tensor
    raw_output: Optional[torch.Tensor]
    new_inner: Optional[torch.Tensor]
    consumed: bool = False

    def release(self) -> None:
        self.raw_output = None
        self.new_inner = None
        self.consumed = True


@dataclass(slots=True)
class StepResult:
    outputs: torch.Tensor
    state: RunningState
    record: Optional[StepRecord] = None
    start: Optional[StartRecord] = None


class InterfacerBlock:
    """Wraps ``block`` so that every lane can query its own focus function.

    Parameters
    ----------
    resources:
        One focus function per lane. The first step must receive exactly
        ``len(resources)`` lanes.
    block:
        The decoder. Its outputs are ``query_size`` query components followed
        by the visible output.
    query_size:
        Length of the query vector.
    start_query:
        Query for the first step. Zeros when ``None``.
    in_combiner:
        Optional combiner mapping ``(context, input)`` to the decoder input.
        Without one the two are concatenated.
    """

    def __init__(
        self,
        resources: Sequence[FocusFunction],
        block: RecurrentBlock,
        *,
        query_size: int,
        start_query: Optional[torch.Tensor] = None,
        in_combiner: Optional[Combiner] = None,
    ) -> None:
        if query_size <= 0:
            raise ValueError("query_size must be positive.")
        if start_query is not None and start_query.shape != (query_size,):
            raise ValueError(
                f"start_query must have shape ({query_size},), got {tuple(start_query.shape)}."
            )
        self.resources = tuple(resources)
        self.block = block
        self.query_size = query_size
        self.start_query = start_query
        self.in_combiner = in_combiner

    def start_state(self, batch_size: int) -> InitialState:
        return InitialState(inner=self.block.start_state(batch_size))

    def variables(self) -> List[torch.Tensor]:
        """Tensors outside the step records that receive gradients."""

        seen: Dict[int, torch.Tensor] = {}

        def _collect(tensors) -> None:
            for tensor in tensors:
                if tensor is not None and tensor.requires_grad and id(tensor) not in seen:
                    seen[id(tensor)] = tensor

        _collect(self.block.parameters())
        if self.in_combiner is not None:
            _collect(self.in_combiner.parameters())
        if self.start_query is not None:
            _collect([self.start_query])
        for resource in self.resources:
            scorer = resource.scorer
            if isinstance(scorer, torch.nn.Module):
                _collect(scorer.parameters())
            _collect([resource.encoded])
        return list(seen.values())

    def step(self, state: BlockState, inputs: torch.Tensor) -> StepResult:
        """Advance every lane in ``state`` by one timestep."""

        start: Optional[StartRecord] = None
        if isinstance(state, InitialState):
            state, start = self._bind(state, int(inputs.size(0)))
        if inputs.size(0) != state.batch_size:
            raise ValueError(
                f"Step received {inputs.size(0)} inputs for {state.batch_size} running lanes."
            )

        recording = torch.is_grad_enabled()
        query = _pool(state.query, recording)
        inner = _pool(state.inner, recording)
        step_inputs = _pool(inputs, recording)

        contexts = torch.stack(
            [resource.focus(row) for resource, row in zip(state.resources, query)], dim=0
        )
        if self.in_combiner is None:
            joined = torch.cat([contexts, step_inputs], dim=-1)
        else:
            joined = self.in_combiner(contexts, step_inputs)
        new_inner, raw = self.block.step(inner, joined)
        if raw.size(-1) <= self.query_size:
            raise ValueError(
                f"Decoder output size {raw.size(-1)} leaves nothing after a query of size "
                f"{self.query_size}."
            )
        next_query = raw[:, : self.query_size]
        visible = raw[:, self.query_size :]

        record = None
        if recording:
            record = StepRecord(
                query=query,
                inner=inner,
                inputs=step_inputs,
                raw_output=raw,
                new_inner=new_inner,
            )
        return StepResult(
            outputs=visible.detach() if recording else visible,
            state=RunningState(
                inner=new_inner.detach() if recording else new_inner,
                query=next_query.detach() if recording else next_query,
                resources=state.resources,
            ),
            record=record,
            start=start,
        )

    def backward_step(
        self,
        record: StepRecord,
        output_grad: Optional[torch.Tensor],
        state_grad: Optional[StateGrad],
        accumulator: GradientAccumulator,
    ) -> Tuple[StateGrad, torch.Tensor]:
        """Propagate one step's upstream gradients back to its inputs.

        Parameter gradients land in ``accumulator``. The returned state
        gradient belongs to the state the step started from, and the returned
        tensor is the gradient on the step inputs.
        """

        if record.consumed or record.raw_output is None or record.new_inner is None:
            raise ConsumedRecordError()
        raw = record.raw_output
        rows = raw.size(0)
        visible_size = raw.size(-1) - self.query_size
        if state_grad is None:
            state_grad = StateGrad()
        query_up = state_grad.query
        if query_up is None:
            query_up = raw.new_zeros(rows, self.query_size)
        if output_grad is None:
            output_grad = raw.new_zeros(rows, visible_size)

        targets = [raw]
        upstream = [torch.cat([query_up, output_grad], dim=-1)]
        if state_grad.inner is not None:
            targets.append(record.new_inner)
            upstream.append(state_grad.inner)

        pooled = [record.query, record.inner, record.inputs]
        variables = pooled + self.variables()
        gradients = torch.autograd.grad(targets, variables, upstream, allow_unused=True)
        for variable, gradient in zip(variables, gradients):
            if gradient is not None:
                accumulator.add(variable, gradient)

        query_grad = accumulator.pop(record.query)
        inner_grad = accumulator.pop(record.inner)
        input_grad = accumulator.pop(record.inputs)
        if input_grad is None:
            input_grad = torch.zeros_like(record.inputs)
        record.release()
        return StateGrad(inner=inner_grad, query=query_grad), input_grad

    def backward_start(
        self,
        start: StartRecord,
        state_grad: Optional[StateGrad],
        accumulator: GradientAccumulator,
    ) -> None:
        """Propagate the first step's state gradient into the start state and query."""

        if state_grad is None:
            return
        targets: List[torch.Tensor] = []
        upstream: List[torch.Tensor] = []
        if state_grad.inner is not None and start.inner.requires_grad:
            targets.append(start.inner)
            upstream.append(state_grad.inner)
        if state_grad.query is not None and start.query.requires_grad:
            targets.append(start.query)
            upstream.append(state_grad.query)
        variables = self.variables()
        if not targets or not variables:
            return
        gradients = torch.autograd.grad(targets, variables, upstream, allow_unused=True)
        for variable, gradient in zip(variables, gradients):
            if gradient is not None:
                accumulator.add(variable, gradient)

    def _bind(self, state: InitialState, batch_size: int) -> Tuple[RunningState, Optional[StartRecord]]:
        if batch_size != len(self.resources):
            raise LaneCountMismatchError(batch_size, len(self.resources))
        if state.batch_size != batch_size:
            raise LaneCountMismatchError(batch_size, state.batch_size)
        inner = state.inner
        if self.start_query is None:
            query = inner.new_zeros(batch_size, self.query_size)
        else:
            query = self.start_query.unsqueeze(0).expand(batch_size, -1)
        start = StartRecord(inner=inner, query=query) if torch.is_grad_enabled() else None
        return RunningState(inner=inner, query=query, resources=self.resources), start


def _pool(tensor: torch.Tensor, recording: bool) -> torch.Tensor:
    """Cut ``tensor`` loose from earlier steps while recording.

    Without recording there is no graph to cut, and forward-mode tangents
    must survive from one step to the next.
    """

    if not recording:
        return tensor
    return tensor.detach().requires_grad_(True)


@dataclass(slots=True)
class _StepEntry:
    lanes: Tuple[int, ...]
    record: Optional[StepRecord]


@dataclass(slots=True)
class BlockRun:
    """Outputs and step records of an interfacer block driven over a batch."""

    block: InterfacerBlock
    inputs: Tuple[torch.Tensor, ...]
    outputs: List[torch.Tensor]
    steps: List[_StepEntry] = field(default_factory=list)
    start: Optional[StartRecord] = None

    @property
    def recorded(self) -> bool:
        return bool(self.steps) and all(entry.record is not None for entry in self.steps)

    def backward(
        self,
        output_grads: Optional[Sequence[Optional[torch.Tensor]]] = None,
        accumulator: Optional[GradientAccumulator] = None,
    ) -> GradientAccumulator:
        """Run the reverse pass given one ``[length, output_size]`` gradient per lane."""

        if not self.recorded:
            raise RuntimeError("BlockRun was produced without gradient recording.")
        if accumulator is None:
            accumulator = GradientAccumulator()
        if output_grads is not None and len(output_grads) != len(self.inputs):
            raise ValueError(
                f"Expected {len(self.inputs)} output gradients, got {len(output_grads)}."
            )
        input_grads: List[List[Optional[torch.Tensor]]] = [
            [None] * int(lane.size(0)) for lane in self.inputs
        ]

        future: Optional[StateGrad] = None
        future_lanes: Tuple[int, ...] = ()
        for timestep in reversed(range(len(self.steps))):
            entry = self.steps[timestep]
            record = entry.record
            if record is None:
                raise RuntimeError(f"Step {timestep} of the BlockRun was not recorded.")
            if record.consumed:
                raise ConsumedRecordError(timestep)
            output_grad = self._step_output_grad(output_grads, entry.lanes, timestep)
            state_grad = _widen(future, future_lanes, entry.lanes)
            future, input_grad = self.block.backward_step(
                record, output_grad, state_grad, accumulator
            )
            future_lanes = entry.lanes
            for row, lane in enumerate(entry.lanes):
                input_grads[lane][timestep] = input_grad[row]

        if self.start is not None:
            self.block.backward_start(self.start, future, accumulator)
            self.start = None

        for lane, grads in zip(self.inputs, input_grads):
            if lane.requires_grad:
                accumulator.add(lane, torch.stack(grads, dim=0))
        LOGGER.debug("block_backward | steps=%d | lanes=%d", len(self.steps), len(self.inputs))
        return accumulator

    def _step_output_grad(
        self,
        output_grads: Optional[Sequence[Optional[torch.Tensor]]],
        lanes: Tuple[int, ...],
        timestep: int,
    ) -> Optional[torch.Tensor]:
        if output_grads is None:
            return None
        rows = []
        for lane in lanes:
            grad = output_grads[lane]
            if grad is None:
                rows.append(torch.zeros_like(self.outputs[lane][timestep]))
            else:
                rows.append(grad[timestep])
        return torch.stack(rows, dim=0)


def _widen(
    future: Optional[StateGrad],
    future_lanes: Tuple[int, ...],
    lanes: Tuple[int, ...],
) -> Optional[StateGrad]:
    """Scatter a state gradient over ``future_lanes`` into the wider ``lanes`` set."""

    if future is None:
        return None
    if future_lanes == lanes:
        return future
    positions = torch.tensor([lanes.index(lane) for lane in future_lanes], dtype=torch.long)

    def _scatter(grad: Optional[torch.Tensor]) -> Optional[torch.Tensor]:
        if grad is None:
            return None
        widened = grad.new_zeros(len(lanes), grad.size(-1))
        return widened.index_copy(0, positions.to(grad.device), grad)

    return StateGrad(inner=_scatter(future.inner), query=_scatter(future.query))


def apply_block(block: InterfacerBlock, inputs: Sequence[torch.Tensor]) -> BlockRun:
    """Drive ``block`` over variable-length lanes of ``[length, input_size]`` inputs.

    Lanes advance in lock-step and drop out once their inputs are exhausted.
    """

    if len(inputs) == 0:
        raise EmptyBatchError("apply_block requires at least one lane.")
    lengths = [int(lane.size(0)) for lane in inputs]
    for lane, length in enumerate(lengths):
        if length == 0:
            raise EmptyLaneError(lane, what="decoder input")

    run = BlockRun(block=block, inputs=tuple(inputs), outputs=[])
    lane_outputs: List[List[torch.Tensor]] = [[] for _ in inputs]
    state: BlockState = block.start_state(len(inputs))
    active: Tuple[int, ...] = tuple(range(len(inputs)))
    for timestep in range(max(lengths)):
        present = tuple(lane for lane in active if lengths[lane] > timestep)
        if present != active and isinstance(state, RunningState):
            state = state.select([active.index(lane) for lane in present])
        active = present
        rows = torch.stack([inputs[lane][timestep] for lane in active], dim=0)
        result = block.step(state, rows)
        if result.start is not None:
            run.start = result.start
        state = result.state
        run.steps.append(_StepEntry(lanes=active, record=result.record))
        for row, lane in enumerate(active):
            lane_outputs[lane].append(result.outputs[row])

    run.outputs = [torch.stack(outputs, dim=0) for outputs in lane_outputs]
    LOGGER.debug("block_apply | lanes=%d | steps=%d", len(inputs), len(run.steps))
    return run


__all__ = [
    "BlockRun",
    "BlockState",
    "InitialState",
    "InterfacerBlock",
    "RunningState",
    "StartRecord",
    "StateGrad",
    "StepRecord",
    "StepResult",
    "apply_block",
]
