# aad_replay/__init__.py
# Reverse-mode Taylor coefficient replay

from .core.opcode import OpCode, CompareOp
from .core.errors import ReplayError, TapeIntegrityError, AtomicFunctionError
from .core.config import SweepConfig, get_logger
from .core.recording import Recording
from .core.atomic import AtomicFunction, AtomicRegistry
from .core.engine import ReverseSweep, reverse_sweep
from .core.dependency import mark_dependencies
from .core.seeds import reverse, reverse_one

# Operator derivative library
from . import ops
from .ops import REVERSE_RULES

get_logger()

__version__ = "0.1.0"

__all__ = [
    # Tape
    'OpCode',
    'CompareOp',
    'Recording',
    # Errors / config
    'ReplayError',
    'TapeIntegrityError',
    'AtomicFunctionError',
    'SweepConfig',
    'get_logger',
    # Atomic
    'AtomicFunction',
    'AtomicRegistry',
    # Engine
    'ReverseSweep',
    'reverse_sweep',
    'mark_dependencies',
    'reverse',
    'reverse_one',
    # Rules
    'ops',
    'REVERSE_RULES',
]
