# aad_replay/core/engine.py
"""
Reverse sweep over a recording.

Given the Taylor coefficients of every variable (computed by a forward
sweep) and seeded adjoints on the dependent rows, walk the tape from EndOp
back to BeginOp and apply each record's reverse rule. After the sweep,
rows 1..n of the partial buffer hold

    partial[j, k] = d W / d x_j^(k)    for k = 0..d

where W is the weighted sum of the order-d dependent coefficients.

The same engine runs the full tape or an explicit list of record positions
(see `dependency.mark_dependencies`).
"""
from __future__ import annotations
import logging
from typing import Iterable, Optional

import numpy as np

from ..ops import REVERSE_RULES, reverse_load_op
from .atomic import AtomicCallFrame, AtomicRegistry, AtomicState
from .config import DEFAULT_CONFIG, SweepConfig
from .errors import TapeIntegrityError
from .opcode import NUM_RES, OpCode, operand_kinds
from .recording import OpRecord, Recording

logger = logging.getLogger(__name__)

# records that carry no derivative information in reverse mode
_PASSIVE_OPS = frozenset({
    OpCode.ComOp, OpCode.DisOp, OpCode.InvOp, OpCode.ParOp, OpCode.PriOp,
    OpCode.StppOp, OpCode.StpvOp, OpCode.StvpOp, OpCode.StvvOp,
    OpCode.CSkipOp,
})
_LOAD_OPS = frozenset({OpCode.LdpOp, OpCode.LdvOp})
_ATOMIC_OPS = frozenset({
    OpCode.UserOp, OpCode.UsrapOp, OpCode.UsravOp, OpCode.UsrrpOp, OpCode.UsrrvOp,
})
_BOUNDARY_OPS = frozenset({OpCode.BeginOp, OpCode.EndOp})

_covered = [set(REVERSE_RULES), _PASSIVE_OPS, _LOAD_OPS, _ATOMIC_OPS, _BOUNDARY_OPS]
if set().union(*_covered) != set(OpCode) or sum(map(len, _covered)) != len(OpCode):
    raise ImportError(
        "reverse dispatch table does not cover every OpCode exactly once: "
        f"missing {sorted(op.name for op in set(OpCode) - set().union(*_covered))}"
    )
del _covered


class ReverseSweep:
    """
    One reverse sweep: the buffers it works on plus its atomic call frame.

    Parameters
    ----------
    recording  : finalized Recording
    d          : highest Taylor order to differentiate
    taylor     : (num_var, J) forward coefficients, J >= d+1, read only
    partial    : (num_var, K) adjoints, K >= d+1, seeded by the caller
    cskip      : bool[num_op] records the forward sweep skipped, or None
    load_alias : int[num_load_op] variable read by each load record, or None
    atomics    : AtomicRegistry resolving UserOp indices, or None
    config     : SweepConfig, defaults to DEFAULT_CONFIG

    A ReverseSweep is used once; create a new one for the next sweep.
    """

    def __init__(self, recording: Recording, d: int, taylor: np.ndarray, partial: np.ndarray,
                 cskip: Optional[np.ndarray] = None, load_alias: Optional[np.ndarray] = None,
                 atomics: Optional[AtomicRegistry] = None,
                 config: Optional[SweepConfig] = None):
        if not recording.finalized:
            raise ValueError("recording must be finalized before a reverse sweep")
        self.recording = recording
        self.d = int(d)
        self.taylor = taylor
        self.partial = partial
        self.parameter = recording.parameter
        self.config = config if config is not None else DEFAULT_CONFIG

        num_op = recording.num_op
        self.cskip = np.zeros(num_op, dtype=bool) if cskip is None else np.asarray(cskip, dtype=bool)
        if load_alias is None:
            load_alias = np.zeros(recording.num_load_op, dtype=np.intp)
        self.load_alias = np.asarray(load_alias, dtype=np.intp)
        self.frame = AtomicCallFrame(atomics if atomics is not None else AtomicRegistry(), self.d)

        self._check_buffers()
        self._done = False

        self._handlers = {op: self._apply_rule for op in REVERSE_RULES}
        self._handlers.update({op: self._passive for op in _PASSIVE_OPS})
        self._handlers.update({op: self._load for op in _LOAD_OPS})
        self._handlers.update({
            OpCode.BeginOp: self._begin,
            OpCode.EndOp: self._end,
            OpCode.UserOp: self._user,
            OpCode.UsrapOp: self._usrap,
            OpCode.UsravOp: self._usrav,
            OpCode.UsrrpOp: self._usrrp,
            OpCode.UsrrvOp: self._usrrv,
        })

    def _check_buffers(self):
        rec, d = self.recording, self.d
        if d < 0:
            raise ValueError(f"order d must be non-negative, got {d}")
        if rec.num_var <= 0:
            raise ValueError("recording defines no variables")
        for name, buf in (("taylor", self.taylor), ("partial", self.partial)):
            if not isinstance(buf, np.ndarray) or buf.ndim != 2:
                raise ValueError(f"{name} must be a 2-D numpy array")
            if buf.shape[0] != rec.num_var:
                raise ValueError(
                    f"{name} has {buf.shape[0]} rows, recording has {rec.num_var} variables"
                )
            if buf.shape[1] < d + 1:
                raise ValueError(f"{name} has {buf.shape[1]} orders, need at least {d + 1}")
        if not self.partial.flags.writeable:
            raise ValueError("partial must be writeable")
        if self.cskip.shape != (rec.num_op,):
            raise ValueError(f"cskip has shape {self.cskip.shape}, expected ({rec.num_op},)")
        if self.load_alias.shape != (rec.num_load_op,):
            raise ValueError(
                f"load_alias has shape {self.load_alias.shape}, expected ({rec.num_load_op},)"
            )

    # ---------------- drivers ---------------- #
    def run(self, positions: Optional[Iterable[int]] = None):
        """Replay the whole tape, or only the records at `positions` (descending)."""
        rec = self.recording
        logger.debug("reverse sweep start: d=%d num_op=%d num_var=%d filtered=%s",
                     self.d, rec.num_op, rec.num_var, positions is not None)
        if positions is None:
            self._run_full()
        else:
            self._run_filtered(positions)
        if self.frame.state != AtomicState.END:
            raise TapeIntegrityError(
                f"reverse sweep finished inside an atomic call (state {self.frame.state.value})"
            )
        logger.debug("reverse sweep finished")

    def _run_full(self):
        cursor = self.recording.reverse_cursor()
        cskip = self.cskip
        while not self._done:
            cursor.next()
            while cskip[cursor.i_op]:
                # skipped variable-arity records still have to move the cursor
                cursor.fix_arity()
                cursor.next()
            cursor.fix_arity()
            self._dispatch(cursor.record())
        if self.config.check_integrity and (cursor.i_op != 0 or cursor.i_var != 0):
            raise TapeIntegrityError(
                f"reverse sweep ended at record {cursor.i_op}, variable {cursor.i_var}"
            )

    def _run_filtered(self, positions: Iterable[int]):
        index = self.recording.index()
        num_op = self.recording.num_op
        previous = num_op
        for i_op in positions:
            i_op = int(i_op)
            if not 0 <= i_op < previous:
                raise ValueError(
                    f"positions must be strictly decreasing record indices, got {i_op} after {previous}"
                )
            previous = i_op
            if self.cskip[i_op]:
                continue
            self._dispatch(index.record(i_op))
            if self._done:
                return
        raise ValueError("positions must end with the BeginOp record 0")

    def _dispatch(self, rec: OpRecord):
        if self.config.trace:
            k = self.d + 1
            row = self.partial[rec.i_var, :k] if NUM_RES[rec.op] else ()
            logger.debug("%6d %-8s i_var=%-6d partial=%s", rec.i_op, rec.op.name, rec.i_var, row)
        if self.config.check_integrity:
            self._check_record(rec)
        self._handlers[rec.op](rec)

    def _check_record(self, rec: OpRecord):
        op, i_op = rec.op, rec.i_op
        n = self.recording.num_ind
        if (op == OpCode.InvOp) != (1 <= i_op <= n) or (op == OpCode.BeginOp) != (i_op == 0):
            raise TapeIntegrityError(f"{op.name} found at record {i_op} (n={n})")
        first_res = rec.i_var - NUM_RES[op] + 1
        if NUM_RES[op] and not 0 <= first_res <= rec.i_var < self.recording.num_var:
            raise TapeIntegrityError(
                f"record {i_op} ({op.name}) has result index {rec.i_var} out of range"
            )
        variables, parameters = operand_kinds(op, rec.arg)
        for v in variables:
            if not 0 < v < first_res:
                raise TapeIntegrityError(
                    f"record {i_op} ({op.name}) uses variable {v}, not below {first_res}"
                )
        for p in parameters:
            if not 0 <= p < self.recording.num_par:
                raise TapeIntegrityError(
                    f"record {i_op} ({op.name}) uses parameter {p} of {self.recording.num_par}"
                )

    # ---------------- handlers ---------------- #
    def _apply_rule(self, rec: OpRecord):
        REVERSE_RULES[rec.op](self.d, rec.i_var, rec.arg, self.parameter, self.taylor, self.partial)

    def _passive(self, rec: OpRecord):
        pass

    def _begin(self, rec: OpRecord):
        self._done = True

    def _end(self, rec: OpRecord):
        raise TapeIntegrityError(f"EndOp met at record {rec.i_op} during the reverse sweep")

    def _load(self, rec: OpRecord):
        i_load = int(rec.arg[2])
        if self.config.check_integrity:
            if not 0 <= i_load < len(self.load_alias):
                raise TapeIntegrityError(f"record {rec.i_op} has load index {i_load}")
            alias = self.load_alias[i_load]
            if not 0 <= alias < rec.i_var:
                raise TapeIntegrityError(
                    f"load record {rec.i_op} read variable {alias}, not below {rec.i_var}"
                )
        reverse_load_op(self.d, rec.i_var, rec.arg, self.load_alias, self.partial)

    def _user(self, rec: OpRecord):
        self.frame.user_op(rec.arg, self.partial)

    def _usrap(self, rec: OpRecord):
        self.frame.arg_parameter(self.parameter[rec.arg[0]])

    def _usrav(self, rec: OpRecord):
        self.frame.arg_variable(int(rec.arg[0]), self.taylor)

    def _usrrp(self, rec: OpRecord):
        self.frame.result_parameter(self.parameter[rec.arg[0]])

    def _usrrv(self, rec: OpRecord):
        self.frame.result_variable(rec.i_var, self.taylor, self.partial)


def reverse_sweep(d: int, n: int, numvar: int, recording: Recording,
                  taylor: np.ndarray, partial: np.ndarray,
                  cskip: Optional[np.ndarray] = None,
                  load_alias: Optional[np.ndarray] = None,
                  atomics: Optional[AtomicRegistry] = None,
                  config: Optional[SweepConfig] = None,
                  positions: Optional[Iterable[int]] = None) -> None:
    """
    Accumulate order 0..d adjoints into `partial` by replaying `recording`
    backwards.

    Args:
        d: highest Taylor order.
        n: number of independent variables (must match the recording).
        numvar: number of variables (must match the recording).
        recording: finalized tape.
        taylor: (numvar, J) forward coefficients, J >= d+1.
        partial: (numvar, K) adjoints, K >= d+1. The caller seeds the
            dependent rows; rows 1..n hold the result afterwards.
        cskip: records skipped by the forward sweep.
        load_alias: variable read by each load record (0 for a parameter).
        atomics: registry for the recording's atomic calls.
        config: integrity checks and tracing.
        positions: if given, only these record positions (descending, ending
            with 0) are replayed.

    Raises:
        ValueError: the buffers or sizes do not match the recording.
        TapeIntegrityError: the recording or its tables are inconsistent.
        AtomicFunctionError: an atomic function's reverse reported failure.
    """
    if n != recording.num_ind:
        raise ValueError(f"n={n} but the recording has {recording.num_ind} independent variables")
    if numvar != recording.num_var:
        raise ValueError(f"numvar={numvar} but the recording has {recording.num_var} variables")
    sweep = ReverseSweep(recording, d, taylor, partial, cskip=cskip, load_alias=load_alias,
                         atomics=atomics, config=config)
    sweep.run(positions)
