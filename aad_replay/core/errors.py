# aad_replay/core/errors.py
"""
Exceptions raised by the replay engine.

None of these are recoverable inside a sweep: a corrupt recording or a failed
external function aborts the whole sweep and the partial buffer is left in an
unspecified state.
"""


class ReplayError(RuntimeError):
    """Base class for every failure detected while replaying a recording."""


class TapeIntegrityError(ReplayError):
    """
    The recording (or the tables produced with it by the forward sweep) is
    inconsistent: out-of-range operand, unknown operator code, mismatched
    atomic markers, or a reference to a variable that is not yet defined.
    """


class AtomicFunctionError(ReplayError):
    """An atomic function reported failure from its reverse callback."""

    def __init__(self, name: str, message: str):
        super().__init__(f"{name}: {message}")
        self.name = name
