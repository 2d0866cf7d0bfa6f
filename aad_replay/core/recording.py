# aad_replay/core/recording.py
"""
Recording (the tape) and its reverse traversal.

A recording is three flat arrays: one operator code per record, the
concatenated integer arguments of all records, and the parameter (constant)
vector. Variables are numbered in creation order; variable 0 belongs to the
BeginOp record, variables 1..n to the independent variables.

The recording is built with put_* calls and then frozen by `finalize()`.
After that nothing on it changes; traversal state lives in a separate
`ReverseCursor`, so one recording can be replayed by any number of sweeps.
"""
from __future__ import annotations
from typing import Iterable, List, NamedTuple, Optional, Sequence

import numpy as np

from .errors import TapeIntegrityError
from .opcode import (
    NUM_ARG, NUM_RES, OpCode, VARIABLE_ARITY, num_args, operand_kinds,
)


class OpRecord(NamedTuple):
    """
    One step of a traversal.

    op    : operator code of the record
    arg   : view of the argument array starting at this record's first argument
    i_op  : position of the record on the tape
    i_var : index of the record's last result (for records without results,
            the last variable defined before it)
    """
    op: OpCode
    arg: np.ndarray
    i_op: int
    i_var: int


def _as_opcode(value) -> OpCode:
    try:
        return OpCode(int(value))
    except ValueError:
        raise TapeIntegrityError(f"unknown operator code {value!r}") from None


class Recording:
    """
    Operation sequence of a traced function F : R^n -> R^m.

    Building
    --------
        rec = Recording()
        x0, x1 = rec.independent(2)
        rec.put_arg(x0, x1)
        z = rec.put_op(OpCode.MulvvOp)
        ...
        rec.finalize()
    """

    def __init__(self):
        self._ops: List[int] = []
        self._args: List[int] = []
        self._pars: List[float] = []
        self.num_var = 0
        self.num_ind = 0
        self.num_load_op = 0
        self._frozen = False
        self._index: Optional["RecordingIndex"] = None

    # ---------------- building ---------------- #
    def _check_open(self):
        if self._frozen:
            raise RuntimeError("recording is finalized; it can no longer be modified")

    def put_op(self, op) -> int:
        """
        Append one record and return the index of its last result variable.
        Arguments for the record are appended separately with `put_arg`.
        """
        self._check_open()
        op = _as_opcode(op)
        self._ops.append(int(op))
        self.num_var += NUM_RES[op]
        if op == OpCode.InvOp:
            self.num_ind += 1
        return self.num_var - 1

    def put_arg(self, *args: int):
        self._check_open()
        self._args.extend(int(a) for a in args)

    def put_par(self, value: float) -> int:
        """Append a parameter and return its index in the parameter vector."""
        self._check_open()
        self._pars.append(float(value))
        return len(self._pars) - 1

    def independent(self, n: int) -> List[int]:
        """Start the tape: BeginOp followed by n InvOp records."""
        if self._ops:
            raise RuntimeError("independent() must be the first call on a recording")
        self.put_arg(0)
        self.put_op(OpCode.BeginOp)
        return [self.put_op(OpCode.InvOp) for _ in range(n)]

    def put_load_op(self, op, offset: int, index: int) -> int:
        """Append LdpOp/LdvOp; the third argument is the load record's own counter."""
        op = _as_opcode(op)
        if op not in (OpCode.LdpOp, OpCode.LdvOp):
            raise ValueError(f"put_load_op expects LdpOp or LdvOp, got {op.name}")
        self.put_arg(offset, index, self.num_load_op)
        self.num_load_op += 1
        return self.put_op(op)

    def put_csum(self, add_vars: Sequence[int], sub_vars: Sequence[int] = (),
                 par_index: Optional[int] = None) -> int:
        """Cumulative sum  par + sum(add_vars) - sum(sub_vars)."""
        if par_index is None:
            par_index = self.put_par(0.0)
        n_add, n_sub = len(add_vars), len(sub_vars)
        self.put_arg(n_add, n_sub, par_index, *add_vars, *sub_vars, 3 + n_add + n_sub)
        return self.put_op(OpCode.CSumOp)

    def put_cskip(self, cop, flags: int, left: int, right: int,
                  skip_if_true: Sequence[int] = (), skip_if_false: Sequence[int] = ()) -> int:
        """Conditional skip of the listed record positions (forward sweep only)."""
        n_true, n_false = len(skip_if_true), len(skip_if_false)
        self.put_arg(int(cop), flags, left, right, n_true, n_false,
                     *skip_if_true, *skip_if_false, 6 + n_true + n_false)
        return self.put_op(OpCode.CSkipOp)

    def finalize(self, validate: bool = True) -> "Recording":
        """
        Close the tape with EndOp and freeze the arrays.

        With `validate=True` the whole tape is scanned once (see
        `RecordingIndex`), so sweeps can rely on its structure.
        """
        self._check_open()
        if not self._ops or self._ops[-1] != OpCode.EndOp:
            self._ops.append(int(OpCode.EndOp))
        self.op_code = np.asarray(self._ops, dtype=np.intp)
        self.op_arg = np.asarray(self._args, dtype=np.intp)
        self.parameter = np.asarray(self._pars, dtype=np.float64)
        for arr in (self.op_code, self.op_arg, self.parameter):
            arr.flags.writeable = False
        self._frozen = True
        if validate:
            self.index()
        return self

    # ---------------- queries ---------------- #
    @property
    def finalized(self) -> bool:
        return self._frozen

    @property
    def num_op(self) -> int:
        return len(self._ops)

    @property
    def num_par(self) -> int:
        return len(self._pars)

    def index(self) -> "RecordingIndex":
        """Per-record offsets and maps; computed once and cached."""
        if not self._frozen:
            raise RuntimeError("finalize() the recording before indexing it")
        if self._index is None:
            self._index = RecordingIndex(self)
        return self._index

    def reverse_cursor(self) -> "ReverseCursor":
        if not self._frozen:
            raise RuntimeError("finalize() the recording before replaying it")
        return ReverseCursor(self)

    def __repr__(self):
        state = "final" if self._frozen else "open"
        return (f"Recording(num_op={self.num_op}, num_var={self.num_var}, "
                f"num_ind={self.num_ind}, num_par={self.num_par}, {state})")


class ReverseCursor:
    """
    Backward traversal over a finalized recording.

    `next()` assumes the table arity of the record it lands on. For the two
    variable-arity codes the argument position is then wrong, and the owner
    of the cursor must call `fix_csum()` / `fix_cskip()` before reading
    `arg` or moving on.
    """

    def __init__(self, recording: Recording):
        self._op_code = recording.op_code
        self._op_arg = recording.op_arg
        self.i_op = recording.num_op - 1
        self.i_var = recording.num_var - 1
        self.op = _as_opcode(self._op_code[self.i_op])
        if self.op != OpCode.EndOp:
            raise TapeIntegrityError(f"last record is {self.op.name}, expected EndOp")
        self._arg_pos = len(self._op_arg)

    @property
    def arg(self) -> np.ndarray:
        return self._op_arg[self._arg_pos:]

    def record(self) -> OpRecord:
        return OpRecord(self.op, self.arg, self.i_op, self.i_var)

    def next(self):
        """Move to the previous record."""
        if self.i_op == 0:
            raise TapeIntegrityError("reverse traversal moved past the BeginOp record")
        self.i_var -= NUM_RES[self.op]
        self.i_op -= 1
        self.op = _as_opcode(self._op_code[self.i_op])
        self._arg_pos -= NUM_ARG[self.op]
        if self._arg_pos < 0:
            raise TapeIntegrityError(f"argument cursor underflow at record {self.i_op}")

    def fix_csum(self):
        """Point `arg` at the first argument of the current CSumOp record."""
        if self.op != OpCode.CSumOp:
            raise TapeIntegrityError(f"fix_csum called on {self.op.name}")
        last = self._arg_pos - 1
        start = last - int(self._op_arg[last])
        if start < 0 or 3 + self._op_arg[start] + self._op_arg[start + 1] != self._op_arg[last]:
            raise TapeIntegrityError(f"malformed CSumOp arguments at record {self.i_op}")
        self._arg_pos = start

    def fix_cskip(self):
        """Point `arg` at the first argument of the current CSkipOp record."""
        if self.op != OpCode.CSkipOp:
            raise TapeIntegrityError(f"fix_cskip called on {self.op.name}")
        last = self._arg_pos - 1
        start = last - int(self._op_arg[last])
        if start < 0 or 6 + self._op_arg[start + 4] + self._op_arg[start + 5] != self._op_arg[last]:
            raise TapeIntegrityError(f"malformed CSkipOp arguments at record {self.i_op}")
        self._arg_pos = start

    def fix_arity(self):
        """Apply the fix for whichever variable-arity code the cursor is on."""
        if self.op == OpCode.CSumOp:
            self.fix_csum()
        elif self.op == OpCode.CSkipOp:
            self.fix_cskip()


class RecordingIndex:
    """
    Forward scan of a recording, done once.

    Attributes
    ----------
    arg_start : np.ndarray[num_op]   first argument position of every record
    var_index : np.ndarray[num_op]   result index as reported by ReverseCursor
    var2op    : np.ndarray[num_var]  record that defines each variable
    block     : np.ndarray[num_op, 2]  (open, close) positions of the atomic
                call containing the record, (-1, -1) outside atomic calls

    The scan also checks every structural invariant of the tape and raises
    TapeIntegrityError on the first violation.
    """

    def __init__(self, recording: Recording):
        op_code, op_arg = recording.op_code, recording.op_arg
        num_op, num_par = recording.num_op, recording.num_par
        n = recording.num_ind

        arg_start = np.zeros(num_op, dtype=np.intp)
        var_index = np.zeros(num_op, dtype=np.intp)
        var2op = np.zeros(recording.num_var, dtype=np.intp)
        block = np.full((num_op, 2), -1, dtype=np.intp)

        if num_op < 2 or op_code[0] != OpCode.BeginOp:
            raise TapeIntegrityError("first record must be BeginOp")

        open_at = -1            # position of the opening UserOp, -1 outside a call
        meta = None             # (atomic_index, call_id, n, m) of the open call
        n_arg_seen = n_res_seen = 0
        arg_pos = 0
        n_var = 0
        for i_op in range(num_op):
            op = _as_opcode(op_code[i_op])
            if (op == OpCode.InvOp) != (1 <= i_op <= n):
                raise TapeIntegrityError(
                    f"record {i_op} is {op.name}; InvOp records must occupy positions 1..{n}"
                )
            if op == OpCode.BeginOp and i_op != 0:
                raise TapeIntegrityError(f"BeginOp at record {i_op}")
            if op == OpCode.EndOp and i_op != num_op - 1:
                raise TapeIntegrityError(f"EndOp at record {i_op} is not the last record")

            arg = op_arg[arg_pos:]
            n_arg = num_args(op, arg) if op in VARIABLE_ARITY else NUM_ARG[op]
            if arg_pos + n_arg > len(op_arg):
                raise TapeIntegrityError(f"record {i_op} ({op.name}) runs past the argument array")
            if op in VARIABLE_ARITY and int(arg[n_arg - 1]) != n_arg - 1:
                raise TapeIntegrityError(f"record {i_op} ({op.name}) has a bad trailing argument")

            first_res = n_var
            n_var += NUM_RES[op]
            arg_start[i_op] = arg_pos
            var_index[i_op] = n_var - 1
            var2op[first_res:n_var] = i_op

            variables, parameters = operand_kinds(op, arg)
            for v in variables:
                if not 0 < v < first_res:
                    raise TapeIntegrityError(
                        f"record {i_op} ({op.name}) references variable {v}, "
                        f"only 1..{first_res - 1} are defined"
                    )
            for p in parameters:
                if not 0 <= p < num_par:
                    raise TapeIntegrityError(
                        f"record {i_op} ({op.name}) references parameter {p} of {num_par}"
                    )
            if op in (OpCode.LdpOp, OpCode.LdvOp) and not 0 <= arg[2] < recording.num_load_op:
                raise TapeIntegrityError(f"record {i_op} ({op.name}) has load index {int(arg[2])}")

            # atomic call structure: open, n arguments, m results, close
            if op == OpCode.UserOp:
                this = tuple(int(a) for a in arg[:4])
                if open_at < 0:
                    open_at, meta = i_op, this
                    n_arg_seen = n_res_seen = 0
                else:
                    if this != meta:
                        raise TapeIntegrityError(
                            f"atomic call closed at record {i_op} with {this}, opened with {meta}"
                        )
                    if n_arg_seen != meta[2] or n_res_seen != meta[3]:
                        raise TapeIntegrityError(
                            f"atomic call at records {open_at}..{i_op} has "
                            f"{n_arg_seen} arguments and {n_res_seen} results, "
                            f"expected {meta[2]} and {meta[3]}"
                        )
                    block[open_at:i_op + 1] = (open_at, i_op)
                    open_at, meta = -1, None
            elif op in (OpCode.UsrapOp, OpCode.UsravOp):
                if open_at < 0 or n_res_seen > 0 or n_arg_seen >= meta[2]:
                    raise TapeIntegrityError(f"unexpected atomic argument record at {i_op}")
                n_arg_seen += 1
            elif op in (OpCode.UsrrpOp, OpCode.UsrrvOp):
                if open_at < 0 or n_arg_seen != meta[2] or n_res_seen >= meta[3]:
                    raise TapeIntegrityError(f"unexpected atomic result record at {i_op}")
                n_res_seen += 1
            elif open_at >= 0:
                raise TapeIntegrityError(f"record {i_op} ({op.name}) inside an atomic call")

            arg_pos += n_arg

        if open_at >= 0:
            raise TapeIntegrityError(f"atomic call opened at record {open_at} is never closed")
        if _as_opcode(op_code[-1]) != OpCode.EndOp:
            raise TapeIntegrityError("last record must be EndOp")
        if n_var != recording.num_var:
            raise TapeIntegrityError(
                f"records define {n_var} variables, recording claims {recording.num_var}"
            )

        self.recording = recording
        self.arg_start = arg_start
        self.var_index = var_index
        self.var2op = var2op
        self.block = block
        for arr in (arg_start, var_index, var2op, block):
            arr.flags.writeable = False

    def record(self, i_op: int) -> OpRecord:
        rec = self.recording
        return OpRecord(
            _as_opcode(rec.op_code[i_op]),
            rec.op_arg[self.arg_start[i_op]:],
            int(i_op),
            int(self.var_index[i_op]),
        )

    def records(self, positions: Iterable[int]):
        for i_op in positions:
            yield self.record(i_op)
