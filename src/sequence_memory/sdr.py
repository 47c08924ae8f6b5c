"""Sparse Distributed Representation (SDR).

An SDR is a binary vector over a (possibly multi-dimensional) index space. It
can be read and written through three encodings:

  - dense:       one 0/1 byte per position, shaped like ``dimensions``
  - sparse:      ascending, duplicate-free flat indices of the set bits
  - coordinates: one index array per dimension

Exactly one encoding is authoritative at any instant. The others are derived
lazily on first access and cached until the next mutation. Every setter
replaces the authoritative encoding, drops the caches, bumps ``generation`` and
then notifies the registered callbacks.

Usage:
    sdr = SDR([4, 4])
    sdr.set_sparse([1, 5, 10])
    sdr.get_coordinates()   # [array([0, 1, 2]), array([1, 1, 2])]
    sdr.get_dense()[1, 1]   # 1
"""
from __future__ import annotations

from math import prod
from typing import Any, Callable, Dict, List, Optional, Sequence, TextIO, Union

import numpy as np

from .errors import ConfigurationError, DimensionMismatchError, InputError, SerializationError
from .serialization import read_document, write_document

Dimensions = Union[int, Sequence[int]]
RandomSource = Union[np.random.Generator, int, None]


def _as_generator(rng: RandomSource) -> np.random.Generator:
    """Return ``rng`` if it is a Generator, else a Generator seeded with it (0 if None)."""
    if isinstance(rng, np.random.Generator):
        return rng
    return np.random.default_rng(0 if rng is None else int(rng))


def as_indices(value: Any, name: str = "indices") -> np.ndarray:
    """Return ``value`` as a flat int64 array, rejecting non-integral entries."""
    array = np.asarray(value)
    if array.size == 0:
        return np.empty(0, dtype=np.int64)
    if not np.issubdtype(array.dtype, np.integer):
        integral = (
            np.issubdtype(array.dtype, np.floating)
            and np.all(np.isfinite(array))
            and np.all(array == np.floor(array))
        )
        if not integral:
            raise InputError(f"{name} must be integers, got {array.dtype} values")
    return array.astype(np.int64).reshape(-1)


def _freeze(array: np.ndarray) -> np.ndarray:
    array.flags.writeable = False
    return array


class SDR:
    """Sparse binary vector with lazily interconverted encodings."""

    def __init__(self, dimensions: Dimensions) -> None:
        if isinstance(dimensions, (int, np.integer)):
            dimensions = [dimensions]
        dims = tuple(int(dim) for dim in dimensions)
        if not dims or any(dim <= 0 for dim in dims):
            raise ConfigurationError(f"SDR dimensions must be non-empty and positive, got {list(dims)}")

        self._dimensions: tuple = dims
        self._size: int = prod(dims)
        self._dense: Optional[np.ndarray] = None
        self._sparse: Optional[np.ndarray] = _freeze(np.empty(0, dtype=np.uint32))
        self._coordinates: Optional[List[np.ndarray]] = None
        self._generation: int = 0
        self._callbacks: Dict[int, Callable[[], None]] = {}
        self._next_callback_handle: int = 0

    # ------------------------------------------------------------------ #
    # Geometry
    # ------------------------------------------------------------------ #

    @property
    def dimensions(self) -> List[int]:
        return list(self._dimensions)

    @property
    def size(self) -> int:
        return self._size

    @property
    def generation(self) -> int:
        """Number of mutations applied to this SDR since construction."""
        return self._generation

    def _check_same_dimensions(self, other: "SDR") -> None:
        if self._dimensions != other._dimensions:
            raise DimensionMismatchError(
                f"SDR dimensions differ: {list(self._dimensions)} != {list(other._dimensions)}"
            )

    # ------------------------------------------------------------------ #
    # Observers
    # ------------------------------------------------------------------ #

    def add_callback(self, callback: Callable[[], None]) -> int:
        """Register ``callback`` to run after every mutation; returns a handle."""
        handle = self._next_callback_handle
        self._next_callback_handle += 1
        self._callbacks[handle] = callback
        return handle

    def remove_callback(self, handle: int) -> None:
        del self._callbacks[handle]

    def _assign(
        self,
        dense: Optional[np.ndarray] = None,
        sparse: Optional[np.ndarray] = None,
        coordinates: Optional[List[np.ndarray]] = None,
    ) -> None:
        """Install a new authoritative encoding and drop all cached ones."""
        self._dense = _freeze(dense) if dense is not None else None
        self._sparse = _freeze(sparse) if sparse is not None else None
        self._coordinates = [_freeze(c) for c in coordinates] if coordinates is not None else None
        self._generation += 1
        for callback in list(self._callbacks.values()):
            callback()

    # ------------------------------------------------------------------ #
    # Getters
    # ------------------------------------------------------------------ #

    def get_dense(self) -> np.ndarray:
        """Return a read-only 0/1 array shaped like ``dimensions``."""
        if self._dense is None:
            dense = np.zeros(self._size, dtype=np.uint8)
            dense[self.get_sparse()] = 1
            self._dense = _freeze(dense)
        return self._dense.reshape(self._dimensions)

    def get_sparse(self) -> np.ndarray:
        """Return the read-only ascending flat indices of the active bits."""
        if self._sparse is None:
            if self._dense is not None:
                sparse = np.flatnonzero(self._dense)
            else:
                sparse = np.sort(np.ravel_multi_index(tuple(self._coordinates), self._dimensions))
            self._sparse = _freeze(sparse.astype(np.uint32))
        return self._sparse

    def get_coordinates(self) -> List[np.ndarray]:
        """Return one read-only index array per dimension."""
        if self._coordinates is None:
            coordinates = np.unravel_index(self.get_sparse().astype(np.intp), self._dimensions)
            self._coordinates = [_freeze(c.astype(np.uint32)) for c in coordinates]
        return list(self._coordinates)

    # ------------------------------------------------------------------ #
    # Setters
    # ------------------------------------------------------------------ #

    def zero(self) -> None:
        """Deactivate every bit."""
        self._assign(sparse=np.empty(0, dtype=np.uint32))

    def set_dense(self, value: Any) -> None:
        """Set from a 0/1 array, either flat or shaped like ``dimensions``."""
        array = np.asarray(value)
        if array.ndim != 1 and tuple(array.shape) != self._dimensions:
            raise DimensionMismatchError(
                f"Dense shape {list(array.shape)} does not match dimensions {list(self._dimensions)}"
            )
        if array.size != self._size:
            raise DimensionMismatchError(f"Dense size {array.size} != SDR size {self._size}")
        self._assign(dense=(array.reshape(-1) != 0).astype(np.uint8))

    def set_sparse(self, value: Any) -> None:
        """Set from ascending, duplicate-free flat indices."""
        indices = as_indices(value, "Sparse indices")
        if indices.size:
            if np.any(np.diff(indices) <= 0):
                raise InputError("Sparse indices must be sorted ascending without duplicates")
            if indices[0] < 0 or indices[-1] >= self._size:
                raise InputError(f"Sparse index out of range [0, {self._size})")
        self._assign(sparse=indices.astype(np.uint32))

    def set_coordinates(self, value: Sequence[Any]) -> None:
        """Set from one index list per dimension."""
        coordinates = [as_indices(c, "Coordinates") for c in value]
        if len(coordinates) != len(self._dimensions):
            raise DimensionMismatchError(
                f"Got {len(coordinates)} coordinate lists for {len(self._dimensions)} dimensions"
            )
        if len({c.size for c in coordinates}) > 1:
            raise InputError("Coordinate lists must all have the same length")
        for axis, (coords, dim) in enumerate(zip(coordinates, self._dimensions)):
            if coords.size and (coords.min() < 0 or coords.max() >= dim):
                raise InputError(f"Coordinate out of range [0, {dim}) on axis {axis}")
        flat = np.ravel_multi_index(tuple(coordinates), self._dimensions)
        if np.unique(flat).size != flat.size:
            raise InputError("Coordinates contain duplicate positions")
        self._assign(coordinates=[c.astype(np.uint32) for c in coordinates])

    def set_sdr(self, other: "SDR") -> None:
        """Copy the value of another SDR with the same dimensions."""
        self._check_same_dimensions(other)
        self._assign(sparse=other.get_sparse().copy())

    dense = property(get_dense, set_dense)
    sparse = property(get_sparse, set_sparse)
    coordinates = property(get_coordinates, set_coordinates)

    # ------------------------------------------------------------------ #
    # Random patterns
    # ------------------------------------------------------------------ #

    def randomize(self, sparsity: float, rng: RandomSource = None) -> None:
        """Activate ``round(size * sparsity)`` positions chosen by ``rng``."""
        if not 0.0 <= sparsity <= 1.0:
            raise InputError(f"sparsity must be within [0, 1], got {sparsity}")
        generator = _as_generator(rng)
        count = int(round(self._size * sparsity))
        chosen = generator.choice(self._size, size=count, replace=False)
        self._assign(sparse=np.sort(chosen).astype(np.uint32))

    def add_noise(self, fraction: float, rng: RandomSource = None) -> None:
        """Move ``round(fraction * sum)`` active bits to currently inactive positions."""
        if not 0.0 <= fraction <= 1.0:
            raise InputError(f"fraction must be within [0, 1], got {fraction}")
        generator = _as_generator(rng)
        active = self.get_sparse()
        inactive = np.setdiff1d(np.arange(self._size, dtype=np.uint32), active, assume_unique=True)
        count = min(int(round(fraction * active.size)), inactive.size)
        if count == 0:
            self._assign(sparse=active.copy())
            return
        turn_off = generator.choice(active, size=count, replace=False)
        turn_on = generator.choice(inactive, size=count, replace=False)
        kept = np.setdiff1d(active, turn_off, assume_unique=True)
        self._assign(sparse=np.sort(np.concatenate([kept, turn_on])).astype(np.uint32))

    # ------------------------------------------------------------------ #
    # Statistics
    # ------------------------------------------------------------------ #

    def get_sum(self) -> int:
        """Number of active bits."""
        if self._dense is not None and self._sparse is None:
            return int(np.count_nonzero(self._dense))
        return int(self.get_sparse().size)

    def get_sparsity(self) -> float:
        return self.get_sum() / self._size

    def overlap(self, other: "SDR") -> int:
        """Number of positions active in both SDRs."""
        self._check_same_dimensions(other)
        return int(np.intersect1d(self.get_sparse(), other.get_sparse(), assume_unique=True).size)

    # ------------------------------------------------------------------ #
    # Copying, comparison, persistence
    # ------------------------------------------------------------------ #

    def copy(self) -> "SDR":
        duplicate = SDR(self._dimensions)
        duplicate.set_sdr(self)
        return duplicate

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SDR):
            return NotImplemented
        return self._dimensions == other._dimensions and np.array_equal(self.get_sparse(), other.get_sparse())

    __hash__ = None  # type: ignore[assignment]

    def __str__(self) -> str:
        dims = ", ".join(str(dim) for dim in self._dimensions)
        active = ", ".join(str(int(i)) for i in self.get_sparse())
        return f"SDR( {dims} ) {active}".rstrip()

    def __repr__(self) -> str:
        return f"SDR(dimensions={list(self._dimensions)}, sparse={self.get_sparse().tolist()})"

    def to_payload(self) -> Dict[str, Any]:
        return {"dimensions": list(self._dimensions), "sparse": self.get_sparse().tolist()}

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SDR":
        try:
            sdr = cls(payload["dimensions"])
            sdr.set_sparse(payload["sparse"])
        except (KeyError, TypeError, ValueError) as exc:
            raise SerializationError(f"Malformed SDR payload: {exc}") from exc
        return sdr

    def save(self, stream: TextIO) -> None:
        write_document(stream, "SDR", self.to_payload())

    @classmethod
    def load(cls, stream: TextIO) -> "SDR":
        return cls.from_payload(read_document(stream, "SDR"))

    def __getstate__(self) -> Dict[str, Any]:
        return self.to_payload()

    def __setstate__(self, state: Dict[str, Any]) -> None:
        self.__init__(state["dimensions"])
        self.set_sparse(state["sparse"])
