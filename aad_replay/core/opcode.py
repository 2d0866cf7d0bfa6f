# aad_replay/core/opcode.py
"""
Operator codes stored on a recording.

Every record on the tape carries one `OpCode`. The tables below give, for each
code, the number of integer arguments it consumes from the flat argument
array and the number of variables it creates. Two codes (`CSumOp`, `CSkipOp`)
have a tape-dependent argument count; their table entry is 0 and the reverse
cursor fixes its argument position for them explicitly.

Result convention: a record's result index is its *last* result. Operators
with auxiliary results (sin/cos pairs, tan squares, pow chains) store them in
the slots directly below.
"""
from __future__ import annotations
from enum import IntEnum
from typing import List, Sequence, Tuple


class OpCode(IntEnum):
    AbsOp = 0
    AcosOp = 1
    AddpvOp = 2
    AddvvOp = 3
    AsinOp = 4
    AtanOp = 5
    BeginOp = 6
    CExpOp = 7
    ComOp = 8
    CosOp = 9
    CoshOp = 10
    CSkipOp = 11
    CSumOp = 12
    DisOp = 13
    DivpvOp = 14
    DivvpOp = 15
    DivvvOp = 16
    EndOp = 17
    ExpOp = 18
    InvOp = 19
    LdpOp = 20
    LdvOp = 21
    LogOp = 22
    MulpvOp = 23
    MulvvOp = 24
    ParOp = 25
    PowpvOp = 26
    PowvpOp = 27
    PowvvOp = 28
    PriOp = 29
    SignOp = 30
    SinOp = 31
    SinhOp = 32
    SqrtOp = 33
    StppOp = 34
    StpvOp = 35
    StvpOp = 36
    StvvOp = 37
    SubpvOp = 38
    SubvpOp = 39
    SubvvOp = 40
    TanOp = 41
    TanhOp = 42
    UserOp = 43
    UsrapOp = 44
    UsravOp = 45
    UsrrpOp = 46
    UsrrvOp = 47


class CompareOp(IntEnum):
    """Comparison used by conditional expressions and conditional skips."""
    Lt = 0
    Le = 1
    Eq = 2
    Ge = 3
    Gt = 4
    Ne = 5


# (number of arguments, number of results)
_ARITY = {
    OpCode.AbsOp: (1, 1),
    OpCode.AcosOp: (1, 2),
    OpCode.AddpvOp: (2, 1),
    OpCode.AddvvOp: (2, 1),
    OpCode.AsinOp: (1, 2),
    OpCode.AtanOp: (1, 2),
    OpCode.BeginOp: (1, 1),
    OpCode.CExpOp: (6, 1),
    OpCode.ComOp: (4, 0),
    OpCode.CosOp: (1, 2),
    OpCode.CoshOp: (1, 2),
    OpCode.CSkipOp: (0, 0),
    OpCode.CSumOp: (0, 1),
    OpCode.DisOp: (2, 1),
    OpCode.DivpvOp: (2, 1),
    OpCode.DivvpOp: (2, 1),
    OpCode.DivvvOp: (2, 1),
    OpCode.EndOp: (0, 0),
    OpCode.ExpOp: (1, 1),
    OpCode.InvOp: (0, 1),
    OpCode.LdpOp: (3, 1),
    OpCode.LdvOp: (3, 1),
    OpCode.LogOp: (1, 1),
    OpCode.MulpvOp: (2, 1),
    OpCode.MulvvOp: (2, 1),
    OpCode.ParOp: (1, 1),
    OpCode.PowpvOp: (2, 3),
    OpCode.PowvpOp: (2, 3),
    OpCode.PowvvOp: (2, 3),
    OpCode.PriOp: (5, 0),
    OpCode.SignOp: (1, 1),
    OpCode.SinOp: (1, 2),
    OpCode.SinhOp: (1, 2),
    OpCode.SqrtOp: (1, 1),
    OpCode.StppOp: (3, 0),
    OpCode.StpvOp: (3, 0),
    OpCode.StvpOp: (3, 0),
    OpCode.StvvOp: (3, 0),
    OpCode.SubpvOp: (2, 1),
    OpCode.SubvpOp: (2, 1),
    OpCode.SubvvOp: (2, 1),
    OpCode.TanOp: (1, 2),
    OpCode.TanhOp: (1, 2),
    OpCode.UserOp: (4, 0),
    OpCode.UsrapOp: (1, 0),
    OpCode.UsravOp: (1, 0),
    OpCode.UsrrpOp: (1, 0),
    OpCode.UsrrvOp: (0, 1),
}

NUM_ARG = {op: a for op, (a, _) in _ARITY.items()}
NUM_RES = {op: r for op, (_, r) in _ARITY.items()}

VARIABLE_ARITY = frozenset({OpCode.CSumOp, OpCode.CSkipOp})

# Per-argument kind for fixed-arity records:
#   'v' variable index, 'p' parameter index, '-' literal / bookkeeping.
_V, _P, _L = "v", "p", "-"
_ARG_KINDS = {
    OpCode.AddpvOp: (_P, _V),
    OpCode.AddvvOp: (_V, _V),
    OpCode.BeginOp: (_L,),
    OpCode.ComOp: (_L, _L, _L, _L),
    OpCode.DisOp: (_L, _V),
    OpCode.DivpvOp: (_P, _V),
    OpCode.DivvpOp: (_V, _P),
    OpCode.DivvvOp: (_V, _V),
    OpCode.LdpOp: (_L, _P, _L),
    OpCode.LdvOp: (_L, _V, _L),
    OpCode.MulpvOp: (_P, _V),
    OpCode.MulvvOp: (_V, _V),
    OpCode.ParOp: (_P,),
    OpCode.PowpvOp: (_P, _V),
    OpCode.PowvpOp: (_V, _P),
    OpCode.PowvvOp: (_V, _V),
    OpCode.PriOp: (_L, _L, _L, _L, _L),
    OpCode.StppOp: (_L, _P, _P),
    OpCode.StpvOp: (_L, _P, _V),
    OpCode.StvpOp: (_L, _V, _P),
    OpCode.StvvOp: (_L, _V, _V),
    OpCode.SubpvOp: (_P, _V),
    OpCode.SubvpOp: (_V, _P),
    OpCode.SubvvOp: (_V, _V),
    OpCode.UserOp: (_L, _L, _L, _L),
    OpCode.UsrapOp: (_P,),
    OpCode.UsravOp: (_V,),
    OpCode.UsrrpOp: (_P,),
}
for _op in (
    OpCode.AbsOp, OpCode.AcosOp, OpCode.AsinOp, OpCode.AtanOp,
    OpCode.CosOp, OpCode.CoshOp, OpCode.ExpOp, OpCode.LogOp,
    OpCode.SignOp, OpCode.SinOp, OpCode.SinhOp, OpCode.SqrtOp,
    OpCode.TanOp, OpCode.TanhOp,
):
    _ARG_KINDS[_op] = (_V,)

# conditional-expression flag bits
CEXP_LEFT_VAR = 1
CEXP_RIGHT_VAR = 2
CEXP_TRUE_VAR = 4
CEXP_FALSE_VAR = 8


def cond_exp(cop, left, right, if_true, if_false):
    """Return `if_true` when `left <cop> right` holds, otherwise `if_false`."""
    cop = CompareOp(cop)
    if cop == CompareOp.Lt:
        flag = left < right
    elif cop == CompareOp.Le:
        flag = left <= right
    elif cop == CompareOp.Eq:
        flag = left == right
    elif cop == CompareOp.Ge:
        flag = left >= right
    elif cop == CompareOp.Gt:
        flag = left > right
    else:
        flag = left != right
    return if_true if flag else if_false


def num_args(op: OpCode, arg: Sequence[int]) -> int:
    """
    Actual argument count of a record whose arguments start at `arg[0]`.
    Only differs from NUM_ARG for the variable-arity codes.
    """
    if op == OpCode.CSumOp:
        return 4 + int(arg[0]) + int(arg[1])
    if op == OpCode.CSkipOp:
        return 7 + int(arg[4]) + int(arg[5])
    return NUM_ARG[op]


def operand_kinds(op: OpCode, arg: Sequence[int]) -> Tuple[List[int], List[int]]:
    """
    Split the operands of one record into (variable indices, parameter indices).

    Bookkeeping arguments (vector offsets, load indices, atomic metadata,
    compare codes) appear in neither list.
    """
    variables: List[int] = []
    parameters: List[int] = []

    if op == OpCode.CExpOp:
        flags = int(arg[1])
        for pos, bit in ((2, CEXP_LEFT_VAR), (3, CEXP_RIGHT_VAR),
                         (4, CEXP_TRUE_VAR), (5, CEXP_FALSE_VAR)):
            (variables if flags & bit else parameters).append(int(arg[pos]))
        return variables, parameters

    if op == OpCode.CSumOp:
        parameters.append(int(arg[2]))
        n_terms = int(arg[0]) + int(arg[1])
        variables.extend(int(a) for a in arg[3:3 + n_terms])
        return variables, parameters

    if op == OpCode.CSkipOp:
        flags = int(arg[1])
        (variables if flags & 1 else parameters).append(int(arg[2]))
        (variables if flags & 2 else parameters).append(int(arg[3]))
        return variables, parameters

    for kind, a in zip(_ARG_KINDS.get(op, ()), arg):
        if kind == _V:
            variables.append(int(a))
        elif kind == _P:
            parameters.append(int(a))
    return variables, parameters
