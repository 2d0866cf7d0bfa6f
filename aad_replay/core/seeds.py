# aad_replay/core/seeds.py

#-----------------------------------------------------------------------------
# We "plant" the seeds (the weights) on order d of the dependent rows and let
# the adjoints grow backwards through the tape.
#-----------------------------------------------------------------------------
from __future__ import annotations
from typing import Optional, Sequence, Union

import numpy as np

from .atomic import AtomicRegistry
from .config import SweepConfig
from .dependency import mark_dependencies
from .engine import reverse_sweep
from .recording import Recording


def _partial_for(recording: Recording, d: int) -> np.ndarray:
    return np.zeros((recording.num_var, d + 1), dtype=np.float64)


def _taylor_for(recording: Recording, d: int, taylor) -> np.ndarray:
    taylor = np.asarray(taylor, dtype=np.float64)
    if taylor.ndim == 1:
        taylor = taylor[:, None]
    if taylor.shape[0] != recording.num_var or taylor.shape[1] < d + 1:
        raise ValueError(
            f"taylor has shape {taylor.shape}, need ({recording.num_var}, >= {d + 1})"
        )
    return taylor


# ----------------------------- weighted outputs ----------------------------- #
def reverse(recording: Recording, d: int, taylor: np.ndarray,
            weights: Union[float, Sequence[float]],
            dep_vars: Optional[Sequence[int]] = None,
            cskip: Optional[np.ndarray] = None,
            load_alias: Optional[np.ndarray] = None,
            atomics: Optional[AtomicRegistry] = None,
            config: Optional[SweepConfig] = None) -> np.ndarray:
    """
    Order 0..d partials of  W = sum_i weights[i] * y_i^(d)  w.r.t. the
    independent variables' Taylor coefficients.

    Parameters
    ----------
    recording : finalized Recording
    d         : highest Taylor order
    taylor    : (num_var, J) coefficients from the forward sweep, J >= d+1
    weights   : one weight per dependent variable
    dep_vars  : dependent variable indices; defaults to the last
                len(weights) variables of the recording

    Returns
    -------
    np.ndarray of shape (n, d+1); row j is the adjoint of independent j+1.
    """
    taylor = _taylor_for(recording, d, taylor)
    weights = np.atleast_1d(np.asarray(weights, dtype=np.float64))
    if dep_vars is None:
        dep_vars = range(recording.num_var - len(weights), recording.num_var)
    dep_vars = [int(v) for v in dep_vars]
    if len(dep_vars) != len(weights):
        raise ValueError(f"{len(weights)} weights for {len(dep_vars)} dependent variables")
    for v in dep_vars:
        if not 0 < v < recording.num_var:
            raise ValueError(f"dependent variable {v} is not a variable of the recording")

    partial = _partial_for(recording, d)
    for v, w in zip(dep_vars, weights):
        # a variable listed twice gets both weights
        partial[v, d] += w
    reverse_sweep(d, recording.num_ind, recording.num_var, recording, taylor, partial,
                  cskip=cskip, load_alias=load_alias, atomics=atomics, config=config)
    return partial[1:recording.num_ind + 1, :d + 1].copy()


# ----------------------------- single output ----------------------------- #
def reverse_one(recording: Recording, d: int, taylor: np.ndarray, dep_var: int,
                weight: float = 1.0,
                cskip: Optional[np.ndarray] = None,
                load_alias: Optional[np.ndarray] = None,
                atomics: Optional[AtomicRegistry] = None,
                config: Optional[SweepConfig] = None) -> np.ndarray:
    """
    Same as reverse() for a single output, replaying only the records that
    `dep_var` depends on.

    Example
    -------
    f = x0 * x1 + sin(x0) at (2, 3), d = 0  ->  [[3 + cos(2)], [2]]
    """
    taylor = _taylor_for(recording, d, taylor)
    positions = mark_dependencies(recording, dep_var, load_alias)
    partial = _partial_for(recording, d)
    partial[dep_var, d] = weight
    reverse_sweep(d, recording.num_ind, recording.num_var, recording, taylor, partial,
                  cskip=cskip, load_alias=load_alias, atomics=atomics, config=config,
                  positions=positions)
    return partial[1:recording.num_ind + 1, :d + 1].copy()
