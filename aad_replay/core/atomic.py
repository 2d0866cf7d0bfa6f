# aad_replay/core/atomic.py
"""
Atomic (externally defined) operations inside a recording.

An atomic call is written forward as

    UserOp(index, id, n, m)  n x {UsrapOp | UsravOp}  m x {UsrrpOp | UsrrvOp}  UserOp(index, id, n, m)

A reverse sweep meets the closing marker first, collects the results, then
the arguments, and at the opening marker hands everything to the function's
own reverse callback. `AtomicCallFrame` holds that in-progress state.
"""
from __future__ import annotations
from enum import Enum
from typing import List, Tuple

import numpy as np

from .errors import AtomicFunctionError, TapeIntegrityError


class AtomicFunction:
    """
    Base class for an operation whose derivative is supplied by the user.

    Subclasses implement `reverse`:

        reverse(order, tx, ty, py, call_id=0) -> (px, ok)

    order   : highest Taylor order d
    tx      : (n, d+1) argument coefficients (parameters are constant series)
    ty      : (m, d+1) result coefficients
    py      : (m, d+1) adjoints of the results
    call_id : the id recorded with this call
    px      : (n, d+1) adjoints of the arguments
    ok      : False reports failure; the sweep then aborts
    """

    def __init__(self, name: str):
        self.name = name

    def reverse(self, order: int, tx: np.ndarray, ty: np.ndarray, py: np.ndarray,
                call_id: int = 0) -> Tuple[np.ndarray, bool]:
        raise NotImplementedError

    def __repr__(self):
        return f"{type(self).__name__}(name={self.name!r})"


class AtomicRegistry:
    """
    Table of atomic functions, addressed by the index stored in UserOp
    records. One registry is handed to each sweep explicitly.
    """

    def __init__(self, functions=()):
        self._functions: List[AtomicFunction] = []
        for fn in functions:
            self.register(fn)

    def register(self, fn: AtomicFunction) -> int:
        """Add `fn` and return the index to record in its UserOp markers."""
        if not isinstance(fn, AtomicFunction):
            raise TypeError(f"expected an AtomicFunction, got {type(fn)}")
        self._functions.append(fn)
        return len(self._functions) - 1

    def __getitem__(self, index: int) -> AtomicFunction:
        if not 0 <= index < len(self._functions):
            raise TapeIntegrityError(
                f"atomic function index {index} is not registered ({len(self._functions)} known)"
            )
        return self._functions[index]

    def __len__(self):
        return len(self._functions)


class AtomicState(Enum):
    """Next record expected by the frame (walking backwards)."""
    START = "start"   # opening UserOp
    ARG = "arg"       # UsrapOp / UsravOp
    RET = "ret"       # UsrrpOp / UsrrvOp
    END = "end"       # closing UserOp, i.e. no call in progress


class AtomicCallFrame:
    """
    State of the atomic call currently being replayed.

    One frame belongs to one sweep; its buffers are reused for every call on
    the tape and only grown.
    """

    def __init__(self, registry: AtomicRegistry, order: int):
        self.registry = registry
        self.order = order
        self.state = AtomicState.END
        self.index = self.call_id = self.n = self.m = 0
        self._i = self._j = 0   # results / arguments still to collect
        k1 = order + 1
        self._ix = np.zeros(0, dtype=np.intp)
        self._tx = np.zeros((0, k1))
        self._ty = np.zeros((0, k1))
        self._py = np.zeros((0, k1))

    def _expect(self, state: AtomicState, what: str):
        if self.state != state:
            raise TapeIntegrityError(
                f"atomic {what} record met in state {self.state.value}, expected {state.value}"
            )

    # ---------------- markers ---------------- #
    def user_op(self, arg, partial: np.ndarray):
        """Closing marker when idle, opening marker after all arguments were read."""
        meta = tuple(int(a) for a in arg[:4])
        if self.state == AtomicState.END:
            self._close(meta)
        elif self.state == AtomicState.START:
            self._open(meta, partial)
        else:
            raise TapeIntegrityError(
                f"atomic marker {meta} met in state {self.state.value}; "
                f"atomic calls may not nest or be truncated"
            )

    def _close(self, meta):
        self.index, self.call_id, self.n, self.m = meta
        # resolve now so an unknown index fails before any work is done
        self.registry[self.index]
        k1 = self.order + 1
        if self._ix.shape[0] < self.n:
            self._ix = np.zeros(self.n, dtype=np.intp)
            self._tx = np.zeros((self.n, k1))
        if self._ty.shape[0] < self.m:
            self._ty = np.zeros((self.m, k1))
            self._py = np.zeros((self.m, k1))
        self._j = self.n
        self._i = self.m
        if self.m > 0:
            self.state = AtomicState.RET
        elif self.n > 0:
            self.state = AtomicState.ARG
        else:
            self.state = AtomicState.START

    def _open(self, meta, partial: np.ndarray):
        expected = (self.index, self.call_id, self.n, self.m)
        if meta != expected:
            raise TapeIntegrityError(
                f"atomic call opened with {meta} but closed with {expected}"
            )
        fn = self.registry[self.index]
        n, m, k1 = self.n, self.m, self.order + 1
        px, ok = fn.reverse(
            self.order, self._tx[:n].copy(), self._ty[:m].copy(), self._py[:m].copy(),
            call_id=self.call_id,
        )
        if not ok:
            raise AtomicFunctionError(fn.name, "reverse returned failure")
        px = np.asarray(px, dtype=np.float64)
        if px.shape != (n, k1):
            raise AtomicFunctionError(
                fn.name, f"reverse returned adjoints of shape {px.shape}, expected {(n, k1)}"
            )
        for j in range(n):
            i_x = self._ix[j]
            if i_x > 0:
                partial[i_x, :k1] += px[j]
        self.state = AtomicState.END

    # ---------------- results ---------------- #
    def result_parameter(self, value: float):
        self._expect(AtomicState.RET, "parameter result")
        self._i -= 1
        self._ty[self._i] = 0.0
        self._ty[self._i, 0] = value
        self._py[self._i] = 0.0
        self._after_result()

    def result_variable(self, i_var: int, taylor: np.ndarray, partial: np.ndarray):
        self._expect(AtomicState.RET, "variable result")
        self._i -= 1
        k1 = self.order + 1
        self._ty[self._i] = taylor[i_var, :k1]
        self._py[self._i] = partial[i_var, :k1]
        self._after_result()

    def _after_result(self):
        if self._i == 0:
            self.state = AtomicState.ARG if self.n > 0 else AtomicState.START

    # ---------------- arguments ---------------- #
    def arg_parameter(self, value: float):
        self._expect(AtomicState.ARG, "parameter argument")
        self._j -= 1
        self._ix[self._j] = 0
        self._tx[self._j] = 0.0
        self._tx[self._j, 0] = value
        self._after_arg()

    def arg_variable(self, i_x: int, taylor: np.ndarray):
        self._expect(AtomicState.ARG, "variable argument")
        self._j -= 1
        self._ix[self._j] = i_x
        self._tx[self._j] = taylor[i_x, :self.order + 1]
        self._after_arg()

    def _after_arg(self):
        if self._j == 0:
            self.state = AtomicState.START
