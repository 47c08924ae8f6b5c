from .connections import Connections, SegmentActivity, SegmentData, SynapseData
from .errors import (
    ConfigurationError,
    DimensionMismatchError,
    InputError,
    SequenceMemoryError,
    SerializationError,
    StateError,
)
from .parameters import TemporalMemoryParameters, check_parameters
from .sdr import SDR
from .temporal_memory import TemporalMemory

__version__ = "0.1.0"

__all__ = [
    "SDR",
    "Connections",
    "SegmentActivity",
    "SegmentData",
    "SynapseData",
    "TemporalMemory",
    "TemporalMemoryParameters",
    "check_parameters",
    "SequenceMemoryError",
    "ConfigurationError",
    "InputError",
    "DimensionMismatchError",
    "StateError",
    "SerializationError",
]
