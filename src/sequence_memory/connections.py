"""Synapse graph for the temporal memory.

The graph is a strict hierarchy cell -> segment -> synapse. Segments and
synapses live in flat slot lists addressed by integer handles; destroyed slots
are set to ``None`` and their handles pushed onto a free list for reuse, so a
handle never dangles into an unrelated record without first being reissued by
``create_segment`` / ``create_synapse``.

A reverse index maps every presynaptic cell to the synapses that listen to it.
``compute_activity`` walks only that index, so its cost scales with the fan-out
of the active inputs rather than with the number of segments.

Capacity is bounded per cell (``max_segments_per_cell``) and per segment
(``max_synapses_per_segment``). When full, the least recently used segment or
the weakest synapse is silently evicted.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Collection, Dict, Iterable, List, Optional, Sequence, TextIO, Tuple

import numpy as np

from .errors import ConfigurationError, InputError, SerializationError
from .serialization import read_document, write_document

logger = logging.getLogger(__name__)

# Synapses whose permanence falls below this are destroyed.
EPSILON = 1e-6

Segment = int
Synapse = int


@dataclass
class SegmentData:
    """Record stored in a segment slot."""

    cell: int
    ordinal: int
    last_used: int
    synapses: List[Synapse] = field(default_factory=list)


@dataclass
class SynapseData:
    """Record stored in a synapse slot."""

    segment: Segment
    presynaptic_cell: int
    permanence: float
    ordinal: int


@dataclass
class SegmentActivity:
    """Result of ``Connections.compute_activity``.

    The count arrays are indexed by segment handle and have length
    ``segment_flat_list_length``. The segment lists are ordered by
    (cell, creation order).
    """

    active_segments: List[Segment]
    matching_segments: List[Segment]
    num_active_connected: np.ndarray
    num_active_potential: np.ndarray


class Connections:
    """Capacity-bounded cell -> segment -> synapse graph."""

    def __init__(
        self,
        num_cells: int,
        max_segments_per_cell: int = 255,
        max_synapses_per_segment: int = 255,
    ) -> None:
        if num_cells <= 0:
            raise ConfigurationError(f"num_cells must be positive, got {num_cells}")
        if max_segments_per_cell <= 0 or max_synapses_per_segment <= 0:
            raise ConfigurationError("Segment and synapse capacities must be positive")

        self.num_cells: int = int(num_cells)
        self.max_segments_per_cell: int = int(max_segments_per_cell)
        self.max_synapses_per_segment: int = int(max_synapses_per_segment)

        self._segments_for_cell: List[List[Segment]] = [[] for _ in range(self.num_cells)]
        self._segments: List[Optional[SegmentData]] = []
        self._synapses: List[Optional[SynapseData]] = []
        self._free_segments: List[Segment] = []
        self._free_synapses: List[Synapse] = []
        self._synapses_for_presynaptic_cell: Dict[int, List[Synapse]] = {}
        self._next_segment_ordinal: int = 0
        self._next_synapse_ordinal: int = 0
        self._num_segments: int = 0
        self._num_synapses: int = 0

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def _check_cell(self, cell: int) -> None:
        if not 0 <= cell < self.num_cells:
            raise InputError(f"Cell {cell} out of range [0, {self.num_cells})")

    def data_for_segment(self, segment: Segment) -> SegmentData:
        data = self._segments[segment] if 0 <= segment < len(self._segments) else None
        if data is None:
            raise InputError(f"Segment {segment} does not exist")
        return data

    def data_for_synapse(self, synapse: Synapse) -> SynapseData:
        data = self._synapses[synapse] if 0 <= synapse < len(self._synapses) else None
        if data is None:
            raise InputError(f"Synapse {synapse} does not exist")
        return data

    def segments_for_cell(self, cell: int) -> List[Segment]:
        self._check_cell(cell)
        return list(self._segments_for_cell[cell])

    def synapses_for_segment(self, segment: Segment) -> List[Synapse]:
        return list(self.data_for_segment(segment).synapses)

    def synapses_for_presynaptic_cell(self, presynaptic_cell: int) -> List[Synapse]:
        return list(self._synapses_for_presynaptic_cell.get(presynaptic_cell, ()))

    def cell_for_segment(self, segment: Segment) -> int:
        return self.data_for_segment(segment).cell

    def sort_key(self, segment: Segment) -> Tuple[int, int]:
        """Key ordering segments by owning cell, then by creation order."""
        data = self.data_for_segment(segment)
        return data.cell, data.ordinal

    @property
    def segment_flat_list_length(self) -> int:
        """Number of segment slots, live or free; upper bound on segment handles."""
        return len(self._segments)

    def num_segments(self, cell: Optional[int] = None) -> int:
        if cell is None:
            return self._num_segments
        self._check_cell(cell)
        return len(self._segments_for_cell[cell])

    def num_synapses(self, segment: Optional[Segment] = None) -> int:
        if segment is None:
            return self._num_synapses
        return len(self.data_for_segment(segment).synapses)

    def num_connected_synapses(self, connected_permanence: float) -> int:
        return sum(
            1 for data in self._synapses if data is not None and data.permanence > connected_permanence
        )

    def iter_segments(self) -> Iterable[Segment]:
        """Yield every live segment in (cell, creation order)."""
        for segments in self._segments_for_cell:
            yield from segments

    # ------------------------------------------------------------------ #
    # Segment lifecycle
    # ------------------------------------------------------------------ #

    def create_segment(self, cell: int, iteration: int = 0) -> Segment:
        """Append a new segment to ``cell``, evicting its least recently used one if full."""
        self._check_cell(cell)
        owned = self._segments_for_cell[cell]
        while len(owned) >= self.max_segments_per_cell:
            victim = min(owned, key=lambda s: (self._segments[s].last_used, self._segments[s].ordinal))
            logger.debug("Cell %d at segment capacity, evicting segment %d", cell, victim)
            self.destroy_segment(victim)

        data = SegmentData(cell=cell, ordinal=self._next_segment_ordinal, last_used=iteration)
        self._next_segment_ordinal += 1
        if self._free_segments:
            segment = self._free_segments.pop()
            self._segments[segment] = data
        else:
            segment = len(self._segments)
            self._segments.append(data)
        owned.append(segment)
        self._num_segments += 1
        return segment

    def destroy_segment(self, segment: Segment) -> None:
        """Remove ``segment``, all of its synapses and their reverse-index entries."""
        data = self.data_for_segment(segment)
        for synapse in list(data.synapses):
            self._remove_synapse(synapse)
        self._segments_for_cell[data.cell].remove(segment)
        self._segments[segment] = None
        self._free_segments.append(segment)
        self._num_segments -= 1

    def set_last_used_iteration(self, segment: Segment, iteration: int) -> None:
        self.data_for_segment(segment).last_used = iteration

    # ------------------------------------------------------------------ #
    # Synapse lifecycle
    # ------------------------------------------------------------------ #

    def _find_synapse(self, segment_data: SegmentData, presynaptic_cell: int) -> Optional[Synapse]:
        for synapse in segment_data.synapses:
            if self._synapses[synapse].presynaptic_cell == presynaptic_cell:
                return synapse
        return None

    def _weakest_synapse(self, candidates: Iterable[Synapse]) -> Optional[Synapse]:
        return min(
            candidates,
            key=lambda s: (self._synapses[s].permanence, self._synapses[s].ordinal),
            default=None,
        )

    def create_synapse(
        self,
        segment: Segment,
        presynaptic_cell: int,
        permanence: float,
        iteration: Optional[int] = None,
    ) -> Synapse:
        """Connect ``segment`` to ``presynaptic_cell``.

        If the segment already has a synapse to that cell, the existing synapse
        keeps the larger of the two permanences and is returned. If the segment
        is full, its weakest synapse is evicted first.
        """
        if presynaptic_cell < 0:
            raise InputError(f"Presynaptic cell must be non-negative, got {presynaptic_cell}")
        segment_data = self.data_for_segment(segment)
        permanence = min(1.0, max(0.0, float(permanence)))
        if iteration is not None:
            segment_data.last_used = iteration

        existing = self._find_synapse(segment_data, presynaptic_cell)
        if existing is not None:
            synapse_data = self._synapses[existing]
            synapse_data.permanence = max(synapse_data.permanence, permanence)
            return existing

        while len(segment_data.synapses) >= self.max_synapses_per_segment:
            victim = self._weakest_synapse(segment_data.synapses)
            logger.debug("Segment %d at synapse capacity, evicting synapse %d", segment, victim)
            self._remove_synapse(victim)

        data = SynapseData(
            segment=segment,
            presynaptic_cell=int(presynaptic_cell),
            permanence=permanence,
            ordinal=self._next_synapse_ordinal,
        )
        self._next_synapse_ordinal += 1
        if self._free_synapses:
            synapse = self._free_synapses.pop()
            self._synapses[synapse] = data
        else:
            synapse = len(self._synapses)
            self._synapses.append(data)
        segment_data.synapses.append(synapse)
        self._synapses_for_presynaptic_cell.setdefault(data.presynaptic_cell, []).append(synapse)
        self._num_synapses += 1
        return synapse

    def _remove_synapse(self, synapse: Synapse) -> None:
        data = self._synapses[synapse]
        self._segments[data.segment].synapses.remove(synapse)
        listeners = self._synapses_for_presynaptic_cell[data.presynaptic_cell]
        listeners.remove(synapse)
        if not listeners:
            del self._synapses_for_presynaptic_cell[data.presynaptic_cell]
        self._synapses[synapse] = None
        self._free_synapses.append(synapse)
        self._num_synapses -= 1

    def destroy_synapse(self, synapse: Synapse) -> None:
        """Remove ``synapse`` from its segment and from the reverse index."""
        self.data_for_synapse(synapse)
        self._remove_synapse(synapse)

    def update_synapse_permanence(self, synapse: Synapse, permanence: float) -> None:
        self.data_for_synapse(synapse).permanence = min(1.0, max(0.0, float(permanence)))

    # ------------------------------------------------------------------ #
    # Learning
    # ------------------------------------------------------------------ #

    def adapt_segment(
        self,
        segment: Segment,
        active_inputs: Collection[int],
        increment: float,
        decrement: float,
        iteration: Optional[int] = None,
    ) -> None:
        """Hebbian update of every synapse on ``segment``.

        Synapses from cells in ``active_inputs`` gain ``increment``; all others
        lose ``decrement``. Permanences are clamped to [0, 1] and synapses that
        fall to zero are destroyed.
        """
        segment_data = self.data_for_segment(segment)
        if iteration is not None:
            segment_data.last_used = iteration

        for synapse in list(segment_data.synapses):
            data = self._synapses[synapse]
            if data.presynaptic_cell in active_inputs:
                permanence = data.permanence + increment
            else:
                permanence = data.permanence - decrement
            permanence = min(1.0, max(0.0, permanence))
            if permanence < EPSILON:
                self._remove_synapse(synapse)
            else:
                data.permanence = permanence

    def grow_synapses(
        self,
        segment: Segment,
        candidates: Sequence[int],
        max_new: int,
        initial_permanence: float,
        rng: np.random.Generator,
        iteration: Optional[int] = None,
    ) -> List[Synapse]:
        """Add up to ``max_new`` synapses to cells drawn from ``candidates``.

        Cells already connected to the segment are skipped. The draw order comes
        from ``rng`` so it is reproducible from the generator state. If the new
        synapses would overflow the segment, the weakest synapses to cells
        outside ``candidates`` are evicted beforehand.
        """
        segment_data = self.data_for_segment(segment)
        if iteration is not None:
            segment_data.last_used = iteration

        already = {self._synapses[s].presynaptic_cell for s in segment_data.synapses}
        pool = sorted(set(int(c) for c in candidates) - already)
        count = min(int(max_new), len(pool))
        if count <= 0:
            return []

        overrun = len(segment_data.synapses) + count - self.max_synapses_per_segment
        if overrun > 0:
            protected = set(int(c) for c in candidates)
            for _ in range(overrun):
                victim = self._weakest_synapse(
                    s for s in segment_data.synapses if self._synapses[s].presynaptic_cell not in protected
                )
                if victim is None:
                    break
                self._remove_synapse(victim)
            count = min(count, self.max_synapses_per_segment - len(segment_data.synapses))

        grown = []
        for _ in range(count):
            pick = int(rng.integers(len(pool)))
            grown.append(self.create_synapse(segment, pool.pop(pick), initial_permanence))
        return grown

    # ------------------------------------------------------------------ #
    # Activity
    # ------------------------------------------------------------------ #

    def compute_activity(
        self,
        active_inputs: Iterable[int],
        connected_permanence: float,
        activation_threshold: int,
        min_threshold: int,
    ) -> SegmentActivity:
        """Count active synapses per segment through the reverse index.

        Only segments reached from at least one active presynaptic cell are
        classified. A segment is active when its connected active synapses reach
        ``activation_threshold`` and matching when all of its active synapses
        reach ``min_threshold``.
        """
        potential: List[Segment] = []
        connected: List[Segment] = []
        for cell in active_inputs:
            for synapse in self._synapses_for_presynaptic_cell.get(int(cell), ()):
                data = self._synapses[synapse]
                potential.append(data.segment)
                if data.permanence > connected_permanence:
                    connected.append(data.segment)

        length = len(self._segments)
        num_active_potential = np.bincount(np.asarray(potential, dtype=np.intp), minlength=length)
        num_active_connected = np.bincount(np.asarray(connected, dtype=np.intp), minlength=length)

        touched = sorted(set(potential), key=self.sort_key)
        active_segments = [s for s in touched if num_active_connected[s] >= activation_threshold]
        matching_segments = [s for s in touched if num_active_potential[s] >= min_threshold]
        return SegmentActivity(
            active_segments=active_segments,
            matching_segments=matching_segments,
            num_active_connected=num_active_connected.astype(np.uint32),
            num_active_potential=num_active_potential.astype(np.uint32),
        )

    # ------------------------------------------------------------------ #
    # Comparison and persistence
    # ------------------------------------------------------------------ #

    def _canonical(self) -> Tuple[Any, ...]:
        cells = tuple(
            tuple(
                (
                    self._segments[s].ordinal,
                    self._segments[s].last_used,
                    tuple(
                        (self._synapses[y].presynaptic_cell, self._synapses[y].permanence, self._synapses[y].ordinal)
                        for y in self._segments[s].synapses
                    ),
                )
                for s in segments
            )
            for segments in self._segments_for_cell
        )
        return (
            self.num_cells,
            self.max_segments_per_cell,
            self.max_synapses_per_segment,
            self._next_segment_ordinal,
            self._next_synapse_ordinal,
            cells,
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Connections):
            return NotImplemented
        return self._canonical() == other._canonical()

    __hash__ = None  # type: ignore[assignment]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "num_cells": self.num_cells,
            "max_segments_per_cell": self.max_segments_per_cell,
            "max_synapses_per_segment": self.max_synapses_per_segment,
            "next_segment_ordinal": self._next_segment_ordinal,
            "next_synapse_ordinal": self._next_synapse_ordinal,
            "segments": [
                None if data is None else [data.cell, data.ordinal, data.last_used, list(data.synapses)]
                for data in self._segments
            ],
            "synapses": [
                None if data is None else [data.segment, data.presynaptic_cell, data.permanence, data.ordinal]
                for data in self._synapses
            ],
            "segments_for_cell": {
                str(cell): list(segments) for cell, segments in enumerate(self._segments_for_cell) if segments
            },
            "free_segments": list(self._free_segments),
            "free_synapses": list(self._free_synapses),
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Connections":
        try:
            connections = cls(
                payload["num_cells"],
                payload["max_segments_per_cell"],
                payload["max_synapses_per_segment"],
            )
            connections._next_segment_ordinal = int(payload["next_segment_ordinal"])
            connections._next_synapse_ordinal = int(payload["next_synapse_ordinal"])
            for entry in payload["segments"]:
                if entry is None:
                    connections._segments.append(None)
                    continue
                cell, ordinal, last_used, synapses = entry
                connections._segments.append(
                    SegmentData(cell=int(cell), ordinal=int(ordinal), last_used=int(last_used),
                                synapses=[int(s) for s in synapses])
                )
                connections._num_segments += 1
            for synapse, entry in enumerate(payload["synapses"]):
                if entry is None:
                    connections._synapses.append(None)
                    continue
                segment, presynaptic_cell, permanence, ordinal = entry
                data = SynapseData(segment=int(segment), presynaptic_cell=int(presynaptic_cell),
                                   permanence=float(permanence), ordinal=int(ordinal))
                connections._synapses.append(data)
                connections._synapses_for_presynaptic_cell.setdefault(data.presynaptic_cell, []).append(synapse)
                connections._num_synapses += 1
            for cell, segments in payload["segments_for_cell"].items():
                connections._segments_for_cell[int(cell)] = [int(s) for s in segments]
            connections._free_segments = [int(s) for s in payload["free_segments"]]
            connections._free_synapses = [int(s) for s in payload["free_synapses"]]
        except (KeyError, TypeError, ValueError, IndexError) as exc:
            raise SerializationError(f"Malformed Connections payload: {exc}") from exc
        return connections

    def save(self, stream: TextIO) -> None:
        write_document(stream, "Connections", self.to_payload())

    @classmethod
    def load(cls, stream: TextIO) -> "Connections":
        return cls.from_payload(read_document(stream, "Connections"))

    def __getstate__(self) -> Dict[str, Any]:
        return self.to_payload()

    def __setstate__(self, state: Dict[str, Any]) -> None:
        self.__dict__.update(Connections.from_payload(state).__dict__)
