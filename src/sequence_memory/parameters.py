import copy
from dataclasses import dataclass, field
from typing import List, Optional

from .errors import ConfigurationError

DEFAULT_SEED = 42


@dataclass
class TemporalMemoryParameters:

    column_dimensions: List[int] = field(default_factory=lambda: [2048])
    """
    * Member "column_dimensions" is the shape of the column space. The number of
    * columns is the product of its entries.
    """
    cells_per_column: int = 32
    """
    * Member "cells_per_column" is the number of cells in every column.
    """
    activation_threshold: int = 13
    """
    * Member "activation_threshold" is the number of active connected synapses
    * a segment needs to become active.
    """
    initial_permanence: float = 0.21
    """
    * Member "initial_permanence" is the permanence given to newly grown synapses.
    """
    connected_permanence: float = 0.50
    """
    * Member "connected_permanence" a synapse is connected once its permanence
    * is strictly above this value.
    """
    min_threshold: int = 10
    """
    * Member "min_threshold" is the number of active potential synapses
    * (any permanence) a segment needs to count as matching.
    """
    max_new_synapse_count: int = 20
    """
    * Member "max_new_synapse_count" caps how many synapses a segment may grow
    * during one learning step.
    """
    permanence_increment: float = 0.10
    """
    * Member "permanence_increment" is added to synapses from active cells
    * when a segment is reinforced.
    """
    permanence_decrement: float = 0.10
    """
    * Member "permanence_decrement" is subtracted from synapses from inactive
    * cells when a segment is reinforced.
    """
    predicted_segment_decrement: float = 0.0
    """
    * Member "predicted_segment_decrement" punishes the active synapses of
    * matching segments in columns that did not become active as predicted,
    * and of matching segments on the losing cells of a bursting column.
    * Zero disables punishment.
    """
    seed: Optional[int] = DEFAULT_SEED
    """
    * Member "seed" initializes the random generator used for synapse growth.
    * None falls back to a fixed default so runs stay reproducible.
    """
    max_segments_per_cell: int = 255
    """
    * Member "max_segments_per_cell" bounds the segments owned by one cell. The
    * least recently used segment is evicted to make room.
    """
    max_synapses_per_segment: int = 255
    """
    * Member "max_synapses_per_segment" bounds the synapses on one segment. The
    * weakest synapse is evicted to make room.
    """
    check_inputs: bool = True
    """
    * Member "check_inputs" verifies that active columns are sorted, unique and
    * in range before every step.
    """
    extra: int = 0
    """
    * Member "extra" is the number of external presynaptic cells that can be
    * supplied through extra_active / extra_winners.
    """


def check_parameters(parameters: TemporalMemoryParameters) -> TemporalMemoryParameters:
    """Validate ``parameters`` and return a normalized deep copy.

    Raises:
        ConfigurationError: If any value is out of range.
    """
    args = copy.deepcopy(parameters)

    dims = args.column_dimensions
    if isinstance(dims, int):
        dims = [dims]
    try:
        args.column_dimensions = [int(dim) for dim in dims]
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"column_dimensions must be a sequence of ints, got {dims!r}") from exc
    if not args.column_dimensions or any(dim <= 0 for dim in args.column_dimensions):
        raise ConfigurationError(f"column_dimensions must be non-empty and positive, got {args.column_dimensions}")

    if args.cells_per_column < 1:
        raise ConfigurationError(f"cells_per_column must be at least 1, got {args.cells_per_column}")

    for name in ("initial_permanence", "connected_permanence", "permanence_increment",
                 "permanence_decrement", "predicted_segment_decrement"):
        check_unit_interval(name, getattr(args, name))

    for name in ("activation_threshold", "min_threshold", "max_new_synapse_count", "extra"):
        check_non_negative(name, getattr(args, name))

    for name in ("max_segments_per_cell", "max_synapses_per_segment"):
        if getattr(args, name) < 1:
            raise ConfigurationError(f"{name} must be at least 1, got {getattr(args, name)}")

    if args.seed is None:
        args.seed = DEFAULT_SEED
    if args.seed < 0:
        raise ConfigurationError(f"seed must be non-negative, got {args.seed}")

    args.check_inputs = bool(args.check_inputs)
    return args


def check_unit_interval(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ConfigurationError(f"{name} must be within [0, 1], got {value}")


def check_non_negative(name: str, value: int) -> None:
    if value < 0:
        raise ConfigurationError(f"{name} must be non-negative, got {value}")
