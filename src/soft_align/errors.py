"""Contract-violation errors raised by the soft alignment engine."""

from __future__ import annotations


class ContractViolation(ValueError):
    """Raised when a caller breaks an input or usage contract."""


class EmptyBatchError(ContractViolation):
    """The batch holds no lanes."""


class EmptyLaneError(ContractViolation):
    """A lane holds no timesteps."""

    def __init__(self, lane: int, *, what: str = "input") -> None:
        super().__init__(f"{what} lane {lane} is empty; every lane needs at least one timestep.")
        self.lane = lane


class LaneCountMismatchError(ContractViolation):
    """The first decode step saw a lane count different from the resource count."""

    def __init__(self, lanes: int, resources: int) -> None:
        super().__init__(
            f"First decode step received {lanes} lanes but {resources} resources are bound."
        )
        self.lanes = lanes
        self.resources = resources


class UnboundResourceError(ContractViolation):
    """A focus function was evaluated without an encoded sequence."""


class ConsumedRecordError(ContractViolation):
    """A step record was propagated through more than once."""

    def __init__(self, step: int | None = None) -> None:
        where = "" if step is None else f" at step {step}"
        super().__init__(f"Step record{where} was already consumed by a backward pass.")
        self.step = step


__all__ = [
    "ContractViolation",
    "EmptyBatchError",
    "EmptyLaneError",
    "LaneCountMismatchError",
    "UnboundResourceError",
    "ConsumedRecordError",
]
