# aad_replay/core/__init__.py

"""
Core public API of the replay engine.

Exports:
    OpCode, CompareOp  : Operator and comparison codes stored on a recording.
    Recording          : The tape; built with put_* calls, then finalized.
    reverse_sweep      : Replay a recording backwards, accumulating adjoints.
    mark_dependencies  : Record positions one output depends on.
    reverse            : Convenience: weighted outputs -> independent adjoints.
    reverse_one        : Convenience: single output through the filtered sweep.
    AtomicFunction     : Base class for user-supplied operations.
    AtomicRegistry     : Table of atomic functions handed to a sweep.
    SweepConfig        : Integrity checking and tracing options.
"""

from .opcode import OpCode, CompareOp, NUM_ARG, NUM_RES
from .errors import ReplayError, TapeIntegrityError, AtomicFunctionError
from .config import SweepConfig, DEFAULT_CONFIG, get_logger
from .recording import Recording, RecordingIndex, ReverseCursor, OpRecord
from .atomic import AtomicFunction, AtomicRegistry, AtomicCallFrame, AtomicState
from .engine import ReverseSweep, reverse_sweep
from .dependency import mark_dependencies
from .seeds import reverse, reverse_one

__all__ = [
    "OpCode",
    "CompareOp",
    "NUM_ARG",
    "NUM_RES",
    "ReplayError",
    "TapeIntegrityError",
    "AtomicFunctionError",
    "SweepConfig",
    "DEFAULT_CONFIG",
    "get_logger",
    "Recording",
    "RecordingIndex",
    "ReverseCursor",
    "OpRecord",
    "AtomicFunction",
    "AtomicRegistry",
    "AtomicCallFrame",
    "AtomicState",
    "ReverseSweep",
    "reverse_sweep",
    "mark_dependencies",
    "reverse",
    "reverse_one",
]
