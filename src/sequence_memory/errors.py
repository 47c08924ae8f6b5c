"""Exception types raised by the sequence memory package."""


class SequenceMemoryError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(SequenceMemoryError, ValueError):
    """Invalid constructor or hyperparameter value."""


class InputError(SequenceMemoryError, ValueError):
    """Structurally invalid input: unsorted columns, out-of-range indices, etc."""


class DimensionMismatchError(InputError):
    """Two SDRs (or an SDR and a geometry) do not have the same dimensions."""


class StateError(SequenceMemoryError, RuntimeError):
    """An operation was invoked in the wrong phase of a timestep."""


class SerializationError(SequenceMemoryError, ValueError):
    """A persisted document is truncated, malformed or of an unsupported version."""
