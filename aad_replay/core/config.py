# aad_replay/core/config.py
"""
Sweep configuration and package logger setup.

Environment variables
---------------------
AAD_REPLAY_LOG_LEVEL : log level name for the ``aad_replay`` logger (default WARNING)
AAD_REPLAY_CHECK     : "0" disables the defensive integrity checks
AAD_REPLAY_TRACE     : "1" logs every dispatched record at DEBUG level
"""
from __future__ import annotations
import logging
import os
from dataclasses import dataclass

_TRUE = ("1", "true", "yes", "on")


def get_logger() -> logging.Logger:
    """Return the package logger, attaching a stream handler the first time."""
    logger = logging.getLogger("aad_replay")
    if not logger.hasHandlers():
        handler = logging.StreamHandler()
        formatter = logging.Formatter('[%(asctime)s][%(levelname)s][%(name)s] %(message)s')
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    level_name = os.getenv("AAD_REPLAY_LOG_LEVEL", "WARNING").upper()
    logger.setLevel(getattr(logging, level_name, logging.WARNING))
    return logger


@dataclass(frozen=True)
class SweepConfig:
    """
    Options shared by every sweep.

    Attributes
    ----------
    check_integrity : bool
        Validate operand indices, record placement and buffer shapes while
        replaying. A failed check raises TapeIntegrityError.
    trace : bool
        Log each dispatched record (op code, position, result index) and the
        result's partial row at DEBUG level.
    """
    check_integrity: bool = True
    trace: bool = False

    @classmethod
    def from_env(cls) -> "SweepConfig":
        check = os.getenv("AAD_REPLAY_CHECK", "1").lower() in _TRUE
        trace = os.getenv("AAD_REPLAY_TRACE", "0").lower() in _TRUE
        return cls(check_integrity=check, trace=trace)


DEFAULT_CONFIG = SweepConfig()
