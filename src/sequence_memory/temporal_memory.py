"""Temporal Memory: learns sequences of column activations.

Each timestep runs in two phases:

  1. ``activate_dendrites`` classifies every segment reached by the current
     active cells (plus any extra inputs) as active and/or matching. The
     result is cached until the next ``activate_cells``; calling it again is a
     no-op.
  2. ``activate_cells`` takes the active columns, activates the predicted
     cells or bursts the column, picks winner cells and, when learning,
     reinforces, grows and punishes segments in the shared ``Connections``.

``compute`` runs both phases. Predictions for the next timestep are read by
calling ``activate_dendrites`` after ``compute`` and then
``get_predictive_cells``.
"""
from __future__ import annotations

import copy
import logging
from collections import defaultdict
from dataclasses import asdict, fields
from math import prod
from statistics import fmean, pstdev
from typing import Any, Dict, Iterable, List, Sequence, TextIO, Tuple, Union

import numpy as np

from .connections import Connections, Segment
from .errors import DimensionMismatchError, InputError, SerializationError, StateError
from .parameters import (
    TemporalMemoryParameters,
    check_non_negative,
    check_parameters,
    check_unit_interval,
)
from .sdr import SDR, as_indices
from .serialization import FORMAT_VERSION, read_document, write_document

logger = logging.getLogger(__name__)

IndexInput = Union[SDR, Sequence[int], np.ndarray, None]


class TemporalMemory:
    """Sequence memory over ``column_dimensions`` columns of ``cells_per_column`` cells."""

    def __init__(self, column_dimensions: Union[int, Sequence[int]] = (2048,), **kwargs: Any) -> None:
        if isinstance(column_dimensions, int):
            column_dimensions = [column_dimensions]
        parameters = TemporalMemoryParameters(column_dimensions=list(column_dimensions), **kwargs)
        self._initialize(parameters)

    @classmethod
    def from_parameters(cls, parameters: TemporalMemoryParameters) -> "TemporalMemory":
        tm = cls.__new__(cls)
        tm._initialize(parameters)
        return tm

    def _initialize(self, parameters: TemporalMemoryParameters) -> None:
        self._params = check_parameters(parameters)
        self._num_columns = prod(self._params.column_dimensions)
        self._num_cells = self._num_columns * self._params.cells_per_column
        self.connections = Connections(
            self._num_cells,
            self._params.max_segments_per_cell,
            self._params.max_synapses_per_segment,
        )
        self._rng = np.random.Generator(np.random.PCG64(self._params.seed))
        self._iteration = 0

        self._active_cells: List[int] = []
        self._winner_cells: List[int] = []
        self._bursting_columns: List[int] = []
        self._clear_dendrite_cache()

    def _clear_dendrite_cache(self) -> None:
        self._segments_valid = False
        self._dendrites_learned = False
        self._active_segments: List[Segment] = []
        self._matching_segments: List[Segment] = []
        self._num_active_connected = np.zeros(0, dtype=np.uint32)
        self._num_active_potential = np.zeros(0, dtype=np.uint32)
        self._learning_inputs: List[int] = []
        self._growth_candidates: List[int] = []

    # ------------------------------------------------------------------ #
    # Geometry
    # ------------------------------------------------------------------ #

    @staticmethod
    def version() -> int:
        """Version of the persisted document format this class reads and writes."""
        return FORMAT_VERSION

    @property
    def parameters(self) -> TemporalMemoryParameters:
        return copy.deepcopy(self._params)

    @property
    def column_dimensions(self) -> List[int]:
        return list(self._params.column_dimensions)

    @property
    def cell_dimensions(self) -> List[int]:
        return self._params.column_dimensions + [self._params.cells_per_column]

    @property
    def cells_per_column(self) -> int:
        return self._params.cells_per_column

    @property
    def extra(self) -> int:
        return self._params.extra

    @property
    def connected_permanence(self) -> float:
        return self._params.connected_permanence

    @property
    def max_segments_per_cell(self) -> int:
        return self._params.max_segments_per_cell

    @property
    def max_synapses_per_segment(self) -> int:
        return self._params.max_synapses_per_segment

    @property
    def iteration(self) -> int:
        return self._iteration

    def number_of_columns(self) -> int:
        return self._num_columns

    def number_of_cells(self) -> int:
        return self._num_cells

    def cells_for_column(self, column: int) -> List[int]:
        if not 0 <= column < self._num_columns:
            raise InputError(f"Column {column} out of range [0, {self._num_columns})")
        start = column * self._params.cells_per_column
        return list(range(start, start + self._params.cells_per_column))

    def column_for_cell(self, cell: int) -> int:
        if not 0 <= cell < self._num_cells:
            raise InputError(f"Cell {cell} out of range [0, {self._num_cells})")
        return cell // self._params.cells_per_column

    # ------------------------------------------------------------------ #
    # Adjustable hyperparameters
    # ------------------------------------------------------------------ #

    @property
    def activation_threshold(self) -> int:
        return self._params.activation_threshold

    @activation_threshold.setter
    def activation_threshold(self, value: int) -> None:
        check_non_negative("activation_threshold", value)
        self._params.activation_threshold = int(value)

    @property
    def min_threshold(self) -> int:
        return self._params.min_threshold

    @min_threshold.setter
    def min_threshold(self, value: int) -> None:
        check_non_negative("min_threshold", value)
        self._params.min_threshold = int(value)

    @property
    def max_new_synapse_count(self) -> int:
        return self._params.max_new_synapse_count

    @max_new_synapse_count.setter
    def max_new_synapse_count(self, value: int) -> None:
        check_non_negative("max_new_synapse_count", value)
        self._params.max_new_synapse_count = int(value)

    @property
    def initial_permanence(self) -> float:
        return self._params.initial_permanence

    @initial_permanence.setter
    def initial_permanence(self, value: float) -> None:
        check_unit_interval("initial_permanence", value)
        self._params.initial_permanence = float(value)

    @property
    def permanence_increment(self) -> float:
        return self._params.permanence_increment

    @permanence_increment.setter
    def permanence_increment(self, value: float) -> None:
        check_unit_interval("permanence_increment", value)
        self._params.permanence_increment = float(value)

    @property
    def permanence_decrement(self) -> float:
        return self._params.permanence_decrement

    @permanence_decrement.setter
    def permanence_decrement(self, value: float) -> None:
        check_unit_interval("permanence_decrement", value)
        self._params.permanence_decrement = float(value)

    @property
    def predicted_segment_decrement(self) -> float:
        return self._params.predicted_segment_decrement

    @predicted_segment_decrement.setter
    def predicted_segment_decrement(self, value: float) -> None:
        check_unit_interval("predicted_segment_decrement", value)
        self._params.predicted_segment_decrement = float(value)

    @property
    def check_inputs(self) -> bool:
        return self._params.check_inputs

    @check_inputs.setter
    def check_inputs(self, value: bool) -> None:
        self._params.check_inputs = bool(value)

    def seed_(self, seed: int) -> None:
        """Replace the random generator with a fresh one seeded by ``seed``."""
        check_non_negative("seed", seed)
        self._params.seed = int(seed)
        self._rng = np.random.Generator(np.random.PCG64(self._params.seed))

    # ------------------------------------------------------------------ #
    # Input validation
    # ------------------------------------------------------------------ #

    def _column_indices(self, active_columns: IndexInput) -> List[int]:
        if isinstance(active_columns, SDR):
            if active_columns.dimensions != self._params.column_dimensions:
                raise DimensionMismatchError(
                    f"Active columns have dimensions {active_columns.dimensions}, "
                    f"expected {self._params.column_dimensions}"
                )
            # SDR sparse indices are always sorted and unique.
            return active_columns.get_sparse().tolist()

        columns = as_indices(active_columns if active_columns is not None else [], "Active columns")
        if self._params.check_inputs and columns.size > 1 and np.any(np.diff(columns) <= 0):
            raise InputError("Active columns must be sorted ascending without duplicates")
        if columns.size and (columns.min() < 0 or columns.max() >= self._num_columns):
            raise InputError(f"Active column out of range [0, {self._num_columns})")
        return np.unique(columns).tolist()

    def _extra_indices(self, name: str, values: IndexInput) -> List[int]:
        """Validate extra cell indices and shift them past the column cells."""
        if values is None:
            return []
        if isinstance(values, SDR):
            if values.size != self._params.extra:
                raise DimensionMismatchError(f"{name} has size {values.size}, expected {self._params.extra}")
            indices = values.get_sparse().astype(np.int64)
        else:
            indices = as_indices(values, name)
        if indices.size and (indices.min() < 0 or indices.max() >= self._params.extra):
            raise InputError(f"{name} index out of range [0, {self._params.extra})")
        return (np.unique(indices) + self._num_cells).tolist()

    # ------------------------------------------------------------------ #
    # Timestep
    # ------------------------------------------------------------------ #

    def activate_dendrites(
        self,
        learn: bool = True,
        extra_active: IndexInput = None,
        extra_winners: IndexInput = None,
    ) -> None:
        """Classify segments against the current active cells and extra inputs.

        Repeated calls before the next ``activate_cells`` reuse the cached
        classification and have no side effects.

        Args:
            learn: When True, active segments are stamped with the current
                iteration and the iteration counter advances. When False and
                the following ``activate_cells`` learns, that call does the
                stamping instead, so each learning timestep advances the
                counter exactly once.
            extra_active: Indices in ``[0, extra)`` of active external cells.
            extra_winners: Indices in ``[0, extra)`` of external winner cells,
                used for learning and synapse growth.
        """
        if self._segments_valid:
            return

        extra_active_cells = self._extra_indices("extra_active", extra_active)
        extra_winner_cells = self._extra_indices("extra_winners", extra_winners)

        activity = self.connections.compute_activity(
            self._active_cells + extra_active_cells,
            self._params.connected_permanence,
            self._params.activation_threshold,
            self._params.min_threshold,
        )
        self._active_segments = activity.active_segments
        self._matching_segments = activity.matching_segments
        self._num_active_connected = activity.num_active_connected
        self._num_active_potential = activity.num_active_potential
        self._learning_inputs = sorted(set(self._active_cells) | set(extra_winner_cells))
        self._growth_candidates = sorted(set(self._winner_cells) | set(extra_winner_cells))

        if learn:
            self._advance_iteration()

        self._segments_valid = True
        logger.debug(
            "Iteration %d: %d active segments, %d matching segments",
            self._iteration,
            len(self._active_segments),
            len(self._matching_segments),
        )

    def _advance_iteration(self) -> None:
        for segment in self._active_segments:
            self.connections.set_last_used_iteration(segment, self._iteration)
        self._iteration += 1
        self._dendrites_learned = True

    def activate_cells(self, active_columns: IndexInput, learn: bool = True) -> None:
        """Activate cells in ``active_columns`` and learn on their segments.

        Raises:
            StateError: If ``activate_dendrites`` has not run for this timestep.
            InputError: If the columns are unsorted, duplicated or out of range
                while ``check_inputs`` is enabled.
        """
        if not self._segments_valid:
            raise StateError("activate_dendrites must be called before activate_cells")
        columns = self._column_indices(active_columns)
        if learn and not self._dendrites_learned:
            # Dendrites were classified without learning; stamp this timestep now.
            self._advance_iteration()

        cells_per_column = self._params.cells_per_column
        active_by_column: Dict[int, List[Segment]] = defaultdict(list)
        for segment in self._active_segments:
            active_by_column[self.connections.cell_for_segment(segment) // cells_per_column].append(segment)
        matching_by_column: Dict[int, List[Segment]] = defaultdict(list)
        for segment in self._matching_segments:
            matching_by_column[self.connections.cell_for_segment(segment) // cells_per_column].append(segment)

        learning_inputs = set(self._learning_inputs)
        active_cells: List[int] = []
        winner_cells: List[int] = []
        bursting_columns: List[int] = []

        for column in columns:
            column_active = active_by_column.get(column, [])
            if column_active:
                predicted = self._activate_predicted_column(column_active, learning_inputs, learn)
                active_cells.extend(predicted)
                winner_cells.extend(predicted)
            else:
                bursting_columns.append(column)
                active_cells.extend(self.cells_for_column(column))
                winner = self._burst_column(column, matching_by_column.get(column, []), learning_inputs, learn)
                winner_cells.append(winner)
                if learn and self._params.predicted_segment_decrement > 0.0:
                    losers = [
                        segment
                        for segment in matching_by_column.get(column, [])
                        if self.connections.cell_for_segment(segment) != winner
                    ]
                    self._punish_segments(losers, learning_inputs)

        if learn and self._params.predicted_segment_decrement > 0.0:
            active_column_set = set(columns)
            for column in sorted(matching_by_column):
                if column not in active_column_set:
                    self._punish_segments(matching_by_column[column], learning_inputs)

        self._active_cells = sorted(active_cells)
        self._winner_cells = sorted(winner_cells)
        self._bursting_columns = bursting_columns
        self._clear_dendrite_cache()
        logger.debug(
            "Iteration %d: %d active columns, %d bursting, %d active cells",
            self._iteration,
            len(columns),
            len(bursting_columns),
            len(self._active_cells),
        )

    def _activate_predicted_column(
        self, column_active: List[Segment], learning_inputs: set, learn: bool
    ) -> List[int]:
        cells: List[int] = []
        for segment in column_active:
            cell = self.connections.cell_for_segment(segment)
            if not cells or cells[-1] != cell:
                cells.append(cell)
            if learn:
                self._reinforce(segment, learning_inputs)
        return cells

    def _burst_column(
        self, column: int, column_matching: List[Segment], learning_inputs: set, learn: bool
    ) -> int:
        if column_matching:
            # Ties keep the earliest segment in (cell, creation) order.
            best = column_matching[0]
            for segment in column_matching[1:]:
                if self._num_active_potential[segment] > self._num_active_potential[best]:
                    best = segment
            if learn:
                self._reinforce(best, learning_inputs)
            return self.connections.cell_for_segment(best)

        winner = self._least_used_cell(column)
        if learn and self._growth_candidates:
            segment = self.connections.create_segment(winner, self._iteration)
            self.connections.grow_synapses(
                segment,
                self._growth_candidates,
                min(self._params.max_new_synapse_count, len(self._growth_candidates)),
                self._params.initial_permanence,
                self._rng,
                self._iteration,
            )
        return winner

    def _least_used_cell(self, column: int) -> int:
        return min(self.cells_for_column(column), key=lambda cell: (self.connections.num_segments(cell), cell))

    def _reinforce(self, segment: Segment, learning_inputs: set) -> None:
        self.connections.adapt_segment(
            segment,
            learning_inputs,
            self._params.permanence_increment,
            self._params.permanence_decrement,
            self._iteration,
        )
        num_new = self._params.max_new_synapse_count - int(self._num_active_potential[segment])
        if num_new > 0 and self._growth_candidates:
            self.connections.grow_synapses(
                segment,
                self._growth_candidates,
                num_new,
                self._params.initial_permanence,
                self._rng,
                self._iteration,
            )

    def _punish_segments(self, segments: List[Segment], learning_inputs: set) -> None:
        """Weaken the active synapses of segments that predicted wrongly."""
        for segment in segments:
            self.connections.adapt_segment(
                segment,
                learning_inputs,
                -self._params.predicted_segment_decrement,
                0.0,
                self._iteration,
            )

    def compute(
        self,
        active_columns: IndexInput,
        learn: bool = True,
        extra_active: IndexInput = None,
        extra_winners: IndexInput = None,
    ) -> None:
        """Run one full timestep: ``activate_dendrites`` then ``activate_cells``."""
        self.activate_dendrites(learn, extra_active, extra_winners)
        self.activate_cells(active_columns, learn)

    def reset(self) -> None:
        """Forget the current timestep so the next input starts a new sequence."""
        self._active_cells = []
        self._winner_cells = []
        self._bursting_columns = []
        self._clear_dendrite_cache()

    def create_segment(self, cell: int) -> Segment:
        """Create a segment on ``cell`` stamped with the current iteration."""
        return self.connections.create_segment(cell, self._iteration)

    # ------------------------------------------------------------------ #
    # Outputs
    # ------------------------------------------------------------------ #

    def _cells_sdr(self, cells: Iterable[int]) -> SDR:
        sdr = SDR(self.cell_dimensions)
        sdr.set_sparse(sorted(cells))
        return sdr

    def get_active_cells(self) -> SDR:
        return self._cells_sdr(self._active_cells)

    def get_winner_cells(self) -> SDR:
        return self._cells_sdr(self._winner_cells)

    def get_predictive_cells(self) -> SDR:
        """Cells owning at least one active segment; empty until ``activate_dendrites`` runs."""
        if not self._segments_valid:
            return self._cells_sdr([])
        return self._cells_sdr({self.connections.cell_for_segment(s) for s in self._active_segments})

    def get_active_segments(self) -> List[Segment]:
        return list(self._active_segments) if self._segments_valid else []

    def get_matching_segments(self) -> List[Segment]:
        return list(self._matching_segments) if self._segments_valid else []

    def get_bursting_columns(self) -> SDR:
        """Columns that burst during the last ``activate_cells``."""
        sdr = SDR(self._params.column_dimensions)
        sdr.set_sparse(self._bursting_columns)
        return sdr

    # ------------------------------------------------------------------ #
    # Reporting
    # ------------------------------------------------------------------ #

    def print_parameters(self) -> None:
        print("TemporalMemory parameters:")
        for param in fields(self._params):
            print(f"  {param.name:<28}= {getattr(self._params, param.name)}")
        print(f"  {'iteration':<28}= {self._iteration}")

    def print_stats(self) -> None:
        """Print a summary table of the segments and synapses in the connections."""
        def describe(values: List[float]) -> Tuple[int, float, float, float, float]:
            if not values:
                return 0, 0.0, 0.0, 0.0, 0.0
            count = len(values)
            std_val = pstdev(values) if count > 1 else 0.0
            return count, fmean(values), std_val, min(values), max(values)

        def format_metric(
            label: str,
            stats: Tuple[int, float, float, float, float],
            value_precision: str = ".2f",
            extrema_precision: str = ".0f",
        ) -> str:
            _, mean_val, std_val, min_val, max_val = stats
            mean_str = format(mean_val, value_precision)
            std_str = format(std_val, value_precision)
            min_str = format(min_val, extrema_precision)
            max_str = format(max_val, extrema_precision)
            return f"| {label:<22}| {mean_str:>8} ± {std_str:<8}| {min_str:>8} | {max_str:>8} |"

        connections = self.connections
        segments = list(connections.iter_segments())
        segments_per_cell = [connections.num_segments(cell) for cell in range(self._num_cells)]
        synapses_per_segment = [connections.num_synapses(segment) for segment in segments]
        permanences = [
            connections.data_for_synapse(synapse).permanence
            for segment in segments
            for synapse in connections.synapses_for_segment(segment)
        ]
        perm_stats = describe(permanences)
        connected = connections.num_connected_synapses(self._params.connected_permanence)
        connected_ratio = (connected / perm_stats[0]) if perm_stats[0] else 0.0

        table_lines = [
            "+------------------------+--------------------+----------+----------+",
            "| Metric                 |   Mean ± Std      |      Min |      Max |",
            "+------------------------+--------------------+----------+----------+",
            format_metric("Segments per cell", describe(segments_per_cell)),
            format_metric("Synapses per segment", describe(synapses_per_segment)),
            format_metric("Permanence", perm_stats, value_precision=".3f", extrema_precision=".3f"),
            "+------------------------+--------------------+----------+----------+",
        ]

        print("TemporalMemory statistics:")
        print(
            f"  Columns: {self._num_columns} | Cells: {self._num_cells} | "
            f"Segments: {len(segments)} | Synapses: {connections.num_synapses()}"
        )
        for line in table_lines:
            print(f"  {line}")
        print(
            f"  Connected synapses (> {self._params.connected_permanence}): {connected}"
            f" ({connected_ratio:.1%} of all synapses)"
        )
        print(f"  Iteration: {self._iteration}")

    # ------------------------------------------------------------------ #
    # Comparison and persistence
    # ------------------------------------------------------------------ #

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TemporalMemory):
            return NotImplemented
        return (
            asdict(self._params) == asdict(other._params)
            and self._iteration == other._iteration
            and self.connections == other.connections
        )

    __hash__ = None  # type: ignore[assignment]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "parameters": asdict(self._params),
            "iteration": self._iteration,
            "connections": self.connections.to_payload(),
            "active_cells": list(self._active_cells),
            "winner_cells": list(self._winner_cells),
            "bursting_columns": list(self._bursting_columns),
            "segments_valid": self._segments_valid,
            "dendrites_learned": self._dendrites_learned,
            "active_segments": list(self._active_segments),
            "matching_segments": list(self._matching_segments),
            "num_active_connected": self._num_active_connected.tolist(),
            "num_active_potential": self._num_active_potential.tolist(),
            "learning_inputs": list(self._learning_inputs),
            "growth_candidates": list(self._growth_candidates),
            "rng_state": self._rng.bit_generator.state,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TemporalMemory":
        try:
            tm = cls.from_parameters(TemporalMemoryParameters(**payload["parameters"]))
            tm._iteration = int(payload["iteration"])
            tm.connections = Connections.from_payload(payload["connections"])
            tm._active_cells = [int(c) for c in payload["active_cells"]]
            tm._winner_cells = [int(c) for c in payload["winner_cells"]]
            tm._bursting_columns = [int(c) for c in payload["bursting_columns"]]
            tm._segments_valid = bool(payload["segments_valid"])
            tm._dendrites_learned = bool(payload["dendrites_learned"])
            tm._active_segments = [int(s) for s in payload["active_segments"]]
            tm._matching_segments = [int(s) for s in payload["matching_segments"]]
            tm._num_active_connected = np.asarray(payload["num_active_connected"], dtype=np.uint32)
            tm._num_active_potential = np.asarray(payload["num_active_potential"], dtype=np.uint32)
            tm._learning_inputs = [int(c) for c in payload["learning_inputs"]]
            tm._growth_candidates = [int(c) for c in payload["growth_candidates"]]
            tm._rng.bit_generator.state = payload["rng_state"]
        except (KeyError, TypeError, ValueError) as exc:
            raise SerializationError(f"Malformed TemporalMemory payload: {exc}") from exc
        return tm

    def save(self, stream: TextIO) -> None:
        write_document(stream, "TemporalMemory", self.to_payload())

    @classmethod
    def load(cls, stream: TextIO) -> "TemporalMemory":
        return cls.from_payload(read_document(stream, "TemporalMemory"))

    def __getstate__(self) -> Dict[str, Any]:
        return self.to_payload()

    def __setstate__(self, state: Dict[str, Any]) -> None:
        self.__dict__.update(TemporalMemory.from_payload(state).__dict__)
