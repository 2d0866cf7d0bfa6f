# taylor_reference.py
# Forward Taylor recorder used by the tests (plays the external forward sweep)

"""
Build a Recording while computing every variable's Taylor coefficients.

Coefficients are normalized: row[k] = v^(k)(0) / k!. The recursions are the
standard forward ones; each operator appends exactly the rows its reverse
rule expects (auxiliary results first, the result last).

Example
-------
    t = TaylorRecorder([[2.0], [3.0]])
    x0, x1 = t.x
    y = x0 * x1 + t.sin(x0)
    taylor = t.finalize()
"""

import math
import numpy as np
from typing import List, Sequence

from aad_replay import AtomicRegistry, OpCode, Recording
from aad_replay.core.opcode import (
    CEXP_FALSE_VAR, CEXP_LEFT_VAR, CEXP_RIGHT_VAR, CEXP_TRUE_VAR, cond_exp,
)


class Var:
    """Handle to one recorded variable."""
    __slots__ = ("tape", "index")

    def __init__(self, tape, index):
        self.tape = tape
        self.index = index

    @property
    def coeffs(self):
        return self.tape.rows[self.index]

    def __add__(a, b):
        return a.tape.add(a, b)

    def __radd__(b, a):
        return b.tape.add(a, b)

    def __sub__(a, b):
        return a.tape.sub(a, b)

    def __rsub__(b, a):
        return b.tape.sub(a, b)

    def __mul__(a, b):
        return a.tape.mul(a, b)

    def __rmul__(b, a):
        return b.tape.mul(a, b)

    def __truediv__(a, b):
        return a.tape.div(a, b)

    def __rtruediv__(b, a):
        return b.tape.div(a, b)

    def __pow__(a, b):
        return a.tape.pow(a, b)

    def __rpow__(b, a):
        return b.tape.pow(a, b)

    def __neg__(a):
        return a.tape.sub(0.0, a)

    def __repr__(self):
        return f"Var({self.index})"


# ----- forward recursions on coefficient rows -----
def _mul_rows(x, y):
    return np.array([sum(x[j - k] * y[k] for k in range(j + 1)) for j in range(len(x))])


def _div_rows(x, y):
    z = np.zeros(len(x))
    for j in range(len(x)):
        z[j] = (x[j] - sum(z[j - k] * y[k] for k in range(1, j + 1))) / y[0]
    return z


def _exp_rows(x):
    z = np.zeros(len(x))
    z[0] = math.exp(x[0])
    for j in range(1, len(x)):
        z[j] = sum(k * x[k] * z[j - k] for k in range(1, j + 1)) / j
    return z


def _log_rows(x):
    z = np.zeros(len(x))
    z[0] = math.log(x[0])
    for j in range(1, len(x)):
        z[j] = (x[j] - sum(k * z[k] * x[j - k] for k in range(1, j)) / j) / x[0]
    return z


def _sqrt_from_rows(q, z0):
    # z * z = q with z[0] given
    z = np.zeros(len(q))
    z[0] = z0
    for j in range(1, len(q)):
        z[j] = (q[j] - sum(z[k] * z[j - k] for k in range(1, j))) / (2.0 * z0)
    return z


def _sin_cos_rows(x, s0, c0, sign):
    # s' = c x',  c' = sign * s x'
    s, c = np.zeros(len(x)), np.zeros(len(x))
    s[0], c[0] = s0, c0
    for j in range(1, len(x)):
        s[j] = sum(k * x[k] * c[j - k] for k in range(1, j + 1)) / j
        c[j] = sign * sum(k * x[k] * s[j - k] for k in range(1, j + 1)) / j
    return s, c


def _tan_rows(x, z0, sign):
    # z' = (1 + sign * y) x',  y = z * z
    z, y = np.zeros(len(x)), np.zeros(len(x))
    z[0] = z0
    y[0] = z0 * z0
    for j in range(1, len(x)):
        z[j] = x[j] + sign * sum(k * x[k] * y[j - k] for k in range(1, j + 1)) / j
        y[j] = sum(z[k] * z[j - k] for k in range(j + 1))
    return y, z


def _inverse_rows(x, b, z0, sign):
    # b z' = sign * x'
    z = np.zeros(len(x))
    z[0] = z0
    for j in range(1, len(x)):
        z[j] = (sign * x[j] - sum(k * z[k] * b[j - k] for k in range(1, j)) / j) / b[0]
    return z


class TaylorRecorder:
    """
    Records operations on a fresh Recording and keeps one coefficient row per
    variable.

    Parameters
    ----------
    x : (n, J) Taylor coefficients of the independent variables
        (a 1-D array is taken as n order-zero values)
    """

    def __init__(self, x):
        x = np.asarray(x, dtype=float)
        if x.ndim == 1:
            x = x[:, None]
        self.J = x.shape[1]
        self.rec = Recording()
        self.rows: List[np.ndarray] = [np.zeros(self.J)]   # BeginOp variable
        self.load_alias: List[int] = []
        self.atomics = AtomicRegistry()
        self._skips = []
        self.x = []
        for i_var, row in zip(self.rec.independent(x.shape[0]), x):
            self.rows.append(row.copy())
            self.x.append(Var(self, i_var))

    # ---------- helpers ----------
    def _const(self, value):
        row = np.zeros(self.J)
        row[0] = value
        return row

    def _row(self, a):
        return a.coeffs if isinstance(a, Var) else self._const(a)

    def _push(self, op, args, rows):
        self.rec.put_arg(*args)
        i_z = self.rec.put_op(op)
        self.rows.extend(rows)
        if len(self.rows) != self.rec.num_var:
            raise RuntimeError(f"{op.name} recorded {len(rows)} rows")
        return Var(self, i_z)

    def _par(self, value):
        return self.rec.put_par(value)

    # ---------- binary ----------
    def add(self, a, b):
        if isinstance(a, Var) and isinstance(b, Var):
            return self._push(OpCode.AddvvOp, (a.index, b.index), [a.coeffs + b.coeffs])
        if isinstance(b, Var):
            return self._push(OpCode.AddpvOp, (self._par(a), b.index), [self._const(a) + b.coeffs])
        return self.add(b, a)

    def sub(self, a, b):
        if isinstance(a, Var) and isinstance(b, Var):
            return self._push(OpCode.SubvvOp, (a.index, b.index), [a.coeffs - b.coeffs])
        if isinstance(b, Var):
            return self._push(OpCode.SubpvOp, (self._par(a), b.index), [self._const(a) - b.coeffs])
        return self._push(OpCode.SubvpOp, (a.index, self._par(b)), [a.coeffs - self._const(b)])

    def mul(self, a, b):
        if isinstance(a, Var) and isinstance(b, Var):
            return self._push(OpCode.MulvvOp, (a.index, b.index), [_mul_rows(a.coeffs, b.coeffs)])
        if isinstance(b, Var):
            return self._push(OpCode.MulpvOp, (self._par(a), b.index), [a * b.coeffs])
        return self.mul(b, a)

    def div(self, a, b):
        if isinstance(a, Var) and isinstance(b, Var):
            return self._push(OpCode.DivvvOp, (a.index, b.index), [_div_rows(a.coeffs, b.coeffs)])
        if isinstance(b, Var):
            return self._push(OpCode.DivpvOp, (self._par(a), b.index),
                              [_div_rows(self._const(a), b.coeffs)])
        return self._push(OpCode.DivvpOp, (a.index, self._par(b)), [a.coeffs / b])

    def pow(self, a, b):
        # exp(b * log(a)): rows log(a), b * log(a), result
        if isinstance(a, Var):
            z0 = _log_rows(a.coeffs)
        else:
            z0 = self._const(math.log(a))
        z1 = _mul_rows(z0, self._row(b))
        z2 = _exp_rows(z1)
        if isinstance(a, Var) and isinstance(b, Var):
            op, args = OpCode.PowvvOp, (a.index, b.index)
        elif isinstance(b, Var):
            op, args = OpCode.PowpvOp, (self._par(a), b.index)
        else:
            op, args = OpCode.PowvpOp, (a.index, self._par(b))
        return self._push(op, args, [z0, z1, z2])

    # ---------- unary ----------
    def exp(self, x):
        return self._push(OpCode.ExpOp, (x.index,), [_exp_rows(x.coeffs)])

    def log(self, x):
        return self._push(OpCode.LogOp, (x.index,), [_log_rows(x.coeffs)])

    def sqrt(self, x):
        return self._push(OpCode.SqrtOp, (x.index,),
                          [_sqrt_from_rows(x.coeffs, math.sqrt(x.coeffs[0]))])

    def sin(self, x):
        x0 = x.coeffs[0]
        s, c = _sin_cos_rows(x.coeffs, math.sin(x0), math.cos(x0), -1.0)
        return self._push(OpCode.SinOp, (x.index,), [c, s])

    def cos(self, x):
        x0 = x.coeffs[0]
        s, c = _sin_cos_rows(x.coeffs, math.sin(x0), math.cos(x0), -1.0)
        return self._push(OpCode.CosOp, (x.index,), [s, c])

    def sinh(self, x):
        x0 = x.coeffs[0]
        s, c = _sin_cos_rows(x.coeffs, math.sinh(x0), math.cosh(x0), 1.0)
        return self._push(OpCode.SinhOp, (x.index,), [c, s])

    def cosh(self, x):
        x0 = x.coeffs[0]
        s, c = _sin_cos_rows(x.coeffs, math.sinh(x0), math.cosh(x0), 1.0)
        return self._push(OpCode.CoshOp, (x.index,), [s, c])

    def tan(self, x):
        y, z = _tan_rows(x.coeffs, math.tan(x.coeffs[0]), 1.0)
        return self._push(OpCode.TanOp, (x.index,), [y, z])

    def tanh(self, x):
        y, z = _tan_rows(x.coeffs, math.tanh(x.coeffs[0]), -1.0)
        return self._push(OpCode.TanhOp, (x.index,), [y, z])

    def _one_minus_square_root(self, x):
        q = -_mul_rows(x.coeffs, x.coeffs)
        q[0] += 1.0
        return _sqrt_from_rows(q, math.sqrt(q[0]))

    def asin(self, x):
        b = self._one_minus_square_root(x)
        z = _inverse_rows(x.coeffs, b, math.asin(x.coeffs[0]), 1.0)
        return self._push(OpCode.AsinOp, (x.index,), [b, z])

    def acos(self, x):
        b = self._one_minus_square_root(x)
        z = _inverse_rows(x.coeffs, b, math.acos(x.coeffs[0]), -1.0)
        return self._push(OpCode.AcosOp, (x.index,), [b, z])

    def atan(self, x):
        b = _mul_rows(x.coeffs, x.coeffs)
        b[0] += 1.0
        z = _inverse_rows(x.coeffs, b, math.atan(x.coeffs[0]), 1.0)
        return self._push(OpCode.AtanOp, (x.index,), [b, z])

    def abs(self, x):
        nonzero = np.flatnonzero(x.coeffs)
        sign = np.sign(x.coeffs[nonzero[0]]) if len(nonzero) else 0.0
        return self._push(OpCode.AbsOp, (x.index,), [sign * x.coeffs])

    def sign(self, x):
        return self._push(OpCode.SignOp, (x.index,), [self._const(np.sign(x.coeffs[0]))])

    # ---------- sums, conditionals, loads ----------
    def csum(self, add: Sequence[Var], sub: Sequence[Var] = (), constant=0.0):
        row = self._const(constant)
        for a in add:
            row = row + a.coeffs
        for s in sub:
            row = row - s.coeffs
        self.rec.put_csum([a.index for a in add], [s.index for s in sub], self._par(constant))
        self.rows.append(row)
        return Var(self, self.rec.num_var - 1)

    def _operand(self, a, bit):
        if isinstance(a, Var):
            return a.index, bit
        return self._par(a), 0

    def cond_exp(self, cop, left, right, if_true, if_false):
        args, flags = [], 0
        for a, bit in ((left, CEXP_LEFT_VAR), (right, CEXP_RIGHT_VAR),
                       (if_true, CEXP_TRUE_VAR), (if_false, CEXP_FALSE_VAR)):
            i, f = self._operand(a, bit)
            args.append(i)
            flags |= f
        taken = cond_exp(cop, self._row(left)[0], self._row(right)[0], if_true, if_false)
        return self._push(OpCode.CExpOp, (int(cop), flags, *args), [self._row(taken).copy()])

    def skip(self, cop, left, right, skip_if_true=(), skip_if_false=()):
        """Conditional skip of the given record positions (possibly not yet recorded)."""
        l_arg, l_flag = self._operand(left, 1)
        r_arg, r_flag = self._operand(right, 2)
        self.rec.put_cskip(cop, l_flag | r_flag, l_arg, r_arg, skip_if_true, skip_if_false)
        holds = cond_exp(cop, self._row(left)[0], self._row(right)[0], True, False)
        self._skips.append(list(skip_if_true) if holds else list(skip_if_false))

    def load(self, elements, index):
        """z = elements[index] where `index` is a Var (LdvOp) or an int (LdpOp)."""
        if isinstance(index, Var):
            pos, op, i_arg = int(index.coeffs[0]), OpCode.LdvOp, index.index
        else:
            pos, op, i_arg = int(index), OpCode.LdpOp, self._par(index)
        element = elements[pos]
        self.load_alias.append(element.index if isinstance(element, Var) else 0)
        self.rec.put_load_op(op, 0, i_arg)
        self.rows.append(self._row(element).copy())
        return Var(self, self.rec.num_var - 1)

    # ---------- records without derivatives ----------
    def par(self, value):
        return self._push(OpCode.ParOp, (self._par(value),), [self._const(value)])

    def dis(self, fn, x):
        return self._push(OpCode.DisOp, (0, x.index), [self._const(fn(x.coeffs[0]))])

    def compare(self, cop, left, right):
        self._push(OpCode.ComOp, (int(cop), 0, 0, 0), [])

    def store(self, offset, index, value):
        self._push(OpCode.StvvOp, (offset, index.index, value.index), [])

    def pri(self):
        self._push(OpCode.PriOp, (0, 0, 0, 0, 0), [])

    # ---------- atomic calls ----------
    def call(self, atomic_index, args, call_id=0, parameter_results=()):
        """
        Record a call of registered atomic function `atomic_index`, whose
        `forward(order, tx)` gives the result rows. Results listed in
        `parameter_results` are recorded as parameters and returned as floats.
        """
        fn = self.atomics[atomic_index]
        tx = np.array([self._row(a) for a in args])
        ty = np.asarray(fn.forward(self.J - 1, tx), dtype=float)
        meta = (atomic_index, call_id, len(args), len(ty))

        self._push(OpCode.UserOp, meta, [])
        for a in args:
            if isinstance(a, Var):
                self._push(OpCode.UsravOp, (a.index,), [])
            else:
                self._push(OpCode.UsrapOp, (self._par(a),), [])
        results = []
        for i, row in enumerate(ty):
            if i in parameter_results:
                self._push(OpCode.UsrrpOp, (self._par(row[0]),), [])
                results.append(float(row[0]))
            else:
                results.append(self._push(OpCode.UsrrvOp, (), [row.copy()]))
        self._push(OpCode.UserOp, meta, [])
        return results

    # ---------- finish ----------
    def finalize(self):
        """Close the recording; returns the (num_var, J) Taylor buffer."""
        self.rec.finalize()
        self.taylor = np.vstack(self.rows)
        self.cskip = np.zeros(self.rec.num_op, dtype=bool)
        for positions in self._skips:
            self.cskip[positions] = True
        self.load_alias = np.asarray(self.load_alias, dtype=np.intp)
        return self.taylor


__all__ = ["Var", "TaylorRecorder"]
