"""
Atomic call protocol: user-supplied reverse callbacks inside a sweep.
"""

import numpy as np
import pytest
from scipy.optimize import approx_fprime

from aad_replay import (
    AtomicFunction, AtomicFunctionError, AtomicRegistry, OpCode, Recording,
    TapeIntegrityError, mark_dependencies, reverse, reverse_one, reverse_sweep,
)
from aad_replay.core.atomic import AtomicCallFrame, AtomicState
from taylor_reference import TaylorRecorder


class ElementwiseSquare(AtomicFunction):
    """y_i = x_i * x_i for every argument."""

    def __init__(self):
        super().__init__("square")
        self.calls = []

    def forward(self, order, tx):
        return np.array([np.convolve(row, row)[:order + 1] for row in tx])

    def reverse(self, order, tx, ty, py, call_id=0):
        self.calls.append(call_id)
        px = np.zeros_like(tx)
        for i in range(tx.shape[0]):
            for k in range(order + 1):
                px[i, k] = sum(2.0 * py[i, j] * tx[i, j - k] for j in range(k, order + 1))
        return px, True


class Failing(ElementwiseSquare):
    def __init__(self):
        AtomicFunction.__init__(self, "always_fails")

    def reverse(self, order, tx, ty, py, call_id=0):
        return np.zeros_like(tx), False


class WrongShape(ElementwiseSquare):
    def __init__(self):
        AtomicFunction.__init__(self, "wrong_shape")

    def reverse(self, order, tx, ty, py, call_id=0):
        return np.zeros((tx.shape[0] + 1, tx.shape[1])), True


def _square_program(X, fn=None):
    t = TaylorRecorder(X)
    idx = t.atomics.register(fn if fn is not None else ElementwiseSquare())
    y0, y1 = t.call(idx, t.x, call_id=7)
    out = y0 + 3.0 * y1
    taylor = t.finalize()
    return t, taylor, out


def test_square_gradient():
    t, taylor, out = _square_program([[1.5], [-0.5]])
    got = reverse(t.rec, 0, taylor, [1.0], atomics=t.atomics)
    np.testing.assert_allclose(got, [[3.0], [-3.0]])
    assert t.atomics[0].calls == [7]


def test_square_mixed_orders():
    # y^(2) = 2 x^(0) x^(2) + x^(1) x^(1)
    x = np.array([[1.5, 0.4, -0.3]])
    t = TaylorRecorder(x)
    idx = t.atomics.register(ElementwiseSquare())
    y, = t.call(idx, t.x)
    taylor = t.finalize()
    got = reverse(t.rec, 2, taylor, [1.0], dep_vars=[y.index], atomics=t.atomics)
    np.testing.assert_allclose(got, [[2.0 * x[0, 2], 2.0 * x[0, 1], 2.0 * x[0, 0]]])


@pytest.mark.parametrize("d", [0, 1, 2])
def test_square_matches_finite_difference(d):
    rng = np.random.default_rng(11 + d)
    X = np.column_stack([[1.2, -0.7], 0.3 * rng.standard_normal((2, d))])

    def top(v):
        t, taylor, out = _square_program(v.reshape(X.shape))
        return out.coeffs[d]

    t, taylor, out = _square_program(X)
    got = reverse(t.rec, d, taylor, [1.0], atomics=t.atomics)
    fd = approx_fprime(X.ravel(), top, 1e-7)
    np.testing.assert_allclose(got.ravel(), fd, rtol=1e-5, atol=1e-6)


def test_square_matches_recorded_product():
    X = np.array([[0.8, 0.2, 0.1], [1.7, -0.4, 0.3]])
    t, taylor, out = _square_program(X)
    atomic = reverse(t.rec, 2, taylor, [1.0], atomics=t.atomics)

    s = TaylorRecorder(X)
    a, b = s.x
    y = a * a + 3.0 * (b * b)
    taylor = s.finalize()
    plain = reverse(s.rec, 2, taylor, [1.0], dep_vars=[y.index])
    np.testing.assert_allclose(atomic, plain, rtol=1e-13)


def test_parameter_argument_and_parameter_result():
    t = TaylorRecorder([[1.5], [2.0]])
    a, b = t.x
    idx = t.atomics.register(ElementwiseSquare())
    y0, y1 = t.call(idx, [a, 3.0], parameter_results=(1,))
    assert y1 == 9.0
    out = y0 * b + y1
    taylor = t.finalize()
    got = reverse(t.rec, 0, taylor, [1.0], dep_vars=[out.index], atomics=t.atomics)
    np.testing.assert_allclose(got, [[2.0 * 1.5 * 2.0], [1.5 * 1.5]])


def test_calls_of_different_sizes_share_one_sweep():
    t = TaylorRecorder([[0.5], [1.5], [-2.0]])
    a, b, c = t.x
    idx = t.atomics.register(ElementwiseSquare())
    p, = t.call(idx, [a])
    q, r, s = t.call(idx, [a, b, c])
    u, = t.call(idx, [b])
    out = t.csum([p, q, r, s, u])
    taylor = t.finalize()
    got = reverse(t.rec, 0, taylor, [1.0], dep_vars=[out.index], atomics=t.atomics)
    np.testing.assert_allclose(got, [[4 * 0.5], [4 * 1.5], [2 * -2.0]])


def test_atomic_block_in_filtered_sweep():
    t = TaylorRecorder([[0.5], [1.5]])
    a, b = t.x
    idx = t.atomics.register(ElementwiseSquare())
    unrelated = t.exp(b)
    y0, y1 = t.call(idx, [a, b])
    out = 2.0 * y1
    taylor = t.finalize()

    positions = mark_dependencies(t.rec, out.index)
    block = t.rec.index().block
    opened, closed = block[t.rec.index().var2op[y0.index]]
    assert set(range(opened, closed + 1)) <= set(positions)
    assert t.rec.index().var2op[unrelated.index] not in positions

    got = reverse_one(t.rec, 0, taylor, out.index, atomics=t.atomics)
    full = reverse(t.rec, 0, taylor, [1.0], dep_vars=[out.index], atomics=t.atomics)
    np.testing.assert_allclose(got, full)
    np.testing.assert_allclose(got, [[0.0], [4.0 * 1.5]])


# ---------------- failures ---------------- #
def test_failed_callback_raises_with_function_name():
    t, taylor, out = _square_program([[1.5], [-0.5]], fn=Failing())
    with pytest.raises(AtomicFunctionError, match="always_fails") as info:
        reverse(t.rec, 0, taylor, [1.0], atomics=t.atomics)
    assert info.value.name == "always_fails"


def test_callback_with_wrong_shape_raises():
    t, taylor, out = _square_program([[1.5], [-0.5]], fn=WrongShape())
    with pytest.raises(AtomicFunctionError, match="wrong_shape"):
        reverse(t.rec, 0, taylor, [1.0], atomics=t.atomics)


def test_unregistered_atomic_raises():
    t, taylor, out = _square_program([[1.5], [-0.5]])
    with pytest.raises(TapeIntegrityError):
        reverse(t.rec, 0, taylor, [1.0], atomics=AtomicRegistry())


def test_mismatched_markers_raise():
    rec = Recording()
    x1, = rec.independent(1)
    rec.put_arg(0, 1, 1, 1)
    rec.put_op(OpCode.UserOp)
    rec.put_arg(x1)
    rec.put_op(OpCode.UsravOp)
    y = rec.put_op(OpCode.UsrrvOp)
    rec.put_arg(0, 2, 1, 1)
    rec.put_op(OpCode.UserOp)
    rec.finalize(validate=False)
    with pytest.raises(TapeIntegrityError):
        rec.index()

    partial = np.zeros((rec.num_var, 1))
    partial[y, 0] = 1.0
    with pytest.raises(TapeIntegrityError):
        reverse_sweep(0, 1, rec.num_var, rec, np.ones((rec.num_var, 1)), partial,
                      atomics=AtomicRegistry([ElementwiseSquare()]))


def test_frame_rejects_out_of_order_records():
    frame = AtomicCallFrame(AtomicRegistry([ElementwiseSquare()]), order=0)
    taylor = np.ones((3, 1))
    partial = np.zeros((3, 1))
    assert frame.state == AtomicState.END
    with pytest.raises(TapeIntegrityError):
        frame.result_variable(2, taylor, partial)

    frame.user_op(np.array([0, 0, 1, 1]), partial)
    assert frame.state == AtomicState.RET
    with pytest.raises(TapeIntegrityError):
        frame.arg_variable(1, taylor)


def test_frame_state_sequence():
    frame = AtomicCallFrame(AtomicRegistry([ElementwiseSquare()]), order=0)
    taylor = np.array([[0.0], [3.0], [9.0]])
    partial = np.array([[0.0], [0.0], [1.0]])
    frame.user_op(np.array([0, 0, 1, 1]), partial)
    frame.result_variable(2, taylor, partial)
    assert frame.state == AtomicState.ARG
    frame.arg_variable(1, taylor)
    assert frame.state == AtomicState.START
    frame.user_op(np.array([0, 0, 1, 1]), partial)
    assert frame.state == AtomicState.END
    np.testing.assert_allclose(partial[1], [6.0])


def test_registry_only_accepts_atomic_functions():
    with pytest.raises(TypeError):
        AtomicRegistry().register(lambda *a: None)
