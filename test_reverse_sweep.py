"""
Reverse sweep engine: end-to-end results, seeding, skipped records,
buffer validation, integrity failures and tracing.
"""

import logging
import math

import numpy as np
import pytest

from aad_replay import (
    CompareOp, OpCode, Recording, SweepConfig, TapeIntegrityError, get_logger,
    reverse, reverse_one, reverse_sweep,
)
from taylor_reference import TaylorRecorder


def _example(x0=2.0, x1=3.0, d=0, coeffs=None):
    X = np.zeros((2, d + 1))
    X[:, 0] = (x0, x1)
    if coeffs is not None:
        X[:, 1:] = coeffs
    t = TaylorRecorder(X)
    a, b = t.x
    y = a * b + t.sin(a)
    taylor = t.finalize()
    return t, taylor, y


# ---------------- results ---------------- #
def test_gradient_of_product_plus_sine():
    t, taylor, y = _example()
    got = reverse(t.rec, 0, taylor, [1.0])
    np.testing.assert_allclose(got, [[3.0 + math.cos(2.0)], [2.0]], rtol=1e-14)


def test_reverse_sweep_leaves_result_in_independent_rows():
    t, taylor, y = _example()
    rec = t.rec
    partial = np.zeros((rec.num_var, 1))
    partial[y.index, 0] = 1.0
    reverse_sweep(0, 2, rec.num_var, rec, taylor, partial)
    np.testing.assert_allclose(partial[1:3, 0], [3.0 + math.cos(2.0), 2.0], rtol=1e-14)


def test_orders_above_d_are_not_touched():
    t, taylor, y = _example(d=2, coeffs=[[0.1, -0.2], [0.3, 0.05]])
    rec = t.rec
    partial = np.zeros((rec.num_var, 4))
    partial[:, 2:] = 5.0
    partial[y.index, :2] = (0.0, 1.0)
    reverse_sweep(1, 2, rec.num_var, rec, taylor, partial)
    np.testing.assert_array_equal(partial[:, 2:], 5.0)


def test_first_order_sweep_gives_gradient_and_hessian_direction():
    # with x(t) = x + v t, order-1 partials w.r.t. x^(0) are H v
    x, v = np.array([2.0, 3.0]), np.array([0.5, -1.0])
    t, taylor, y = _example(*x, d=1, coeffs=v[:, None])
    got = reverse(t.rec, 1, taylor, [1.0])
    hessian = np.array([[-math.sin(2.0), 1.0], [1.0, 0.0]])
    gradient = np.array([3.0 + math.cos(2.0), 2.0])
    np.testing.assert_allclose(got[:, 0], hessian @ v, rtol=1e-12)
    np.testing.assert_allclose(got[:, 1], gradient, rtol=1e-12)


def test_linear_in_weights():
    rng = np.random.default_rng(3)
    X = np.column_stack([[0.9, 1.4], 0.2 * rng.standard_normal((2, 2))])
    t = TaylorRecorder(X)
    a, b = t.x
    y1 = t.exp(a) * b
    y2 = t.log(b) - a / b
    taylor = t.finalize()
    deps = [y1.index, y2.index]

    g1 = reverse(t.rec, 2, taylor, [1.0, 0.0], dep_vars=deps)
    g2 = reverse(t.rec, 2, taylor, [0.0, 1.0], dep_vars=deps)
    g = reverse(t.rec, 2, taylor, [2.5, -0.75], dep_vars=deps)
    np.testing.assert_allclose(g, 2.5 * g1 - 0.75 * g2, rtol=1e-12, atol=1e-14)


def test_repeated_sweeps_give_identical_results():
    t, taylor, y = _example()
    first = reverse(t.rec, 0, taylor, [1.0])
    second = reverse(t.rec, 0, taylor, [1.0])
    np.testing.assert_array_equal(first, second)
    assert not t.rec.op_code.flags.writeable


def test_checks_disabled_gives_same_result():
    t, taylor, y = _example()
    plain = reverse(t.rec, 0, taylor, [1.0])
    unchecked = reverse(t.rec, 0, taylor, [1.0], config=SweepConfig(check_integrity=False))
    np.testing.assert_array_equal(plain, unchecked)


def test_passive_records_do_not_change_the_result():
    t = TaylorRecorder([[0.4], [1.3]])
    a, b = t.x
    c = t.par(2.0)
    t.compare(CompareOp.Lt, a, b)
    t.store(0, c, a)
    t.pri()
    k = t.dis(math.floor, b)
    y = a * b + c * k
    taylor = t.finalize()
    got = reverse(t.rec, 0, taylor, [1.0], dep_vars=[y.index])
    np.testing.assert_allclose(got, [[1.3], [0.4]])


# ---------------- skipped records ---------------- #
def _dead_branch(with_skip):
    t = TaylorRecorder([[0.3], [1.1]])
    x0, x1 = t.x
    live = x0 * x1
    if with_skip:
        p = t.rec.num_op
        # CSkipOp at p, the dead CSumOp at p + 1 and SinOp at p + 2
        t.skip(CompareOp.Lt, x0, x1, skip_if_true=[p + 1, p + 2])
    dead_sum = t.csum([x0, x1])
    dead = t.sin(dead_sum)
    y = t.cond_exp(CompareOp.Lt, x0, x1, live, dead)
    taylor = t.finalize()
    # the forward sweep never computed the skipped records
    taylor[[dead_sum.index, dead.index - 1, dead.index]] = np.nan
    return t, taylor, y


def test_skipped_records_are_not_replayed():
    t, taylor, y = _dead_branch(with_skip=True)
    assert t.cskip.sum() == 2
    got = reverse(t.rec, 0, taylor, [1.0], dep_vars=[y.index], cskip=t.cskip)
    np.testing.assert_allclose(got, [[1.1], [0.3]])


def test_skipped_records_in_filtered_sweep():
    t, taylor, y = _dead_branch(with_skip=True)
    got = reverse_one(t.rec, 0, taylor, y.index, cskip=t.cskip)
    np.testing.assert_allclose(got, [[1.1], [0.3]])


def test_dead_branch_without_skip_mask_propagates_nan():
    t, taylor, y = _dead_branch(with_skip=True)
    got = reverse(t.rec, 0, taylor, [1.0], dep_vars=[y.index])
    assert np.isnan(got).all()


# ---------------- argument validation ---------------- #
def test_buffer_with_too_few_orders_is_rejected():
    t, taylor, y = _example()
    rec = t.rec
    with pytest.raises(ValueError):
        reverse_sweep(1, 2, rec.num_var, rec, taylor, np.zeros((rec.num_var, 2)))
    with pytest.raises(ValueError):
        reverse_sweep(0, 2, rec.num_var, rec, taylor, np.zeros((rec.num_var, 0)))


def test_buffer_row_count_must_match():
    t, taylor, y = _example()
    rec = t.rec
    with pytest.raises(ValueError):
        reverse_sweep(0, 2, rec.num_var, rec, taylor[:-1], np.zeros((rec.num_var, 1)))
    with pytest.raises(ValueError):
        reverse_sweep(0, 2, rec.num_var, rec, taylor, np.zeros((rec.num_var + 1, 1)))


def test_sizes_must_match_recording():
    t, taylor, y = _example()
    rec = t.rec
    partial = np.zeros((rec.num_var, 1))
    with pytest.raises(ValueError):
        reverse_sweep(0, 3, rec.num_var, rec, taylor, partial)
    with pytest.raises(ValueError):
        reverse_sweep(0, 2, rec.num_var + 1, rec, taylor, partial)
    with pytest.raises(ValueError):
        reverse_sweep(0, 2, rec.num_var, rec, taylor, partial, cskip=np.zeros(2, dtype=bool))


def test_weights_and_dependents_must_agree():
    t, taylor, y = _example()
    with pytest.raises(ValueError):
        reverse(t.rec, 0, taylor, [1.0, 2.0], dep_vars=[y.index])


def test_unfinalized_recording_is_rejected():
    rec = Recording()
    rec.independent(1)
    with pytest.raises(ValueError):
        reverse_sweep(0, 1, rec.num_var, rec, np.zeros((2, 1)), np.zeros((2, 1)))


# ---------------- integrity ---------------- #
def _forward_reference_tape():
    # variable 2 = x1 * x3, but variable 3 is defined after it
    rec = Recording()
    x1, = rec.independent(1)
    rec.put_arg(x1, 3)
    rec.put_op(OpCode.MulvvOp)
    rec.put_arg(x1, x1)
    rec.put_op(OpCode.MulvvOp)
    return rec.finalize(validate=False)


def test_forward_reference_raises_integrity_error():
    rec = _forward_reference_tape()
    taylor = np.ones((rec.num_var, 1))
    partial = np.zeros((rec.num_var, 1))
    partial[-1, 0] = 1.0
    with pytest.raises(TapeIntegrityError):
        reverse_sweep(0, 1, rec.num_var, rec, taylor, partial)
    with pytest.raises(TapeIntegrityError):
        rec.index()


def test_misplaced_independent_raises_integrity_error():
    rec = Recording()
    x1, = rec.independent(1)
    rec.put_arg(x1, x1)
    rec.put_op(OpCode.MulvvOp)
    rec.put_op(OpCode.InvOp)
    rec.finalize(validate=False)
    with pytest.raises(TapeIntegrityError):
        reverse_sweep(0, rec.num_ind, rec.num_var, rec,
                      np.ones((rec.num_var, 1)), np.zeros((rec.num_var, 1)))


def test_parameter_out_of_range_raises_integrity_error():
    rec = Recording()
    x1, = rec.independent(1)
    rec.put_arg(4, x1)
    rec.put_op(OpCode.MulpvOp)
    rec.finalize(validate=False)
    with pytest.raises(TapeIntegrityError):
        reverse_sweep(0, 1, rec.num_var, rec,
                      np.ones((rec.num_var, 1)), np.zeros((rec.num_var, 1)))


def test_unknown_operator_code_is_rejected():
    with pytest.raises(TapeIntegrityError):
        Recording().put_op(99)


# ---------------- configuration and tracing ---------------- #
def test_trace_logs_every_record(caplog):
    t, taylor, y = _example()
    caplog.set_level(logging.DEBUG, logger="aad_replay")
    reverse(t.rec, 0, taylor, [1.0], config=SweepConfig(trace=True))
    messages = [r.getMessage() for r in caplog.records if r.name == "aad_replay.core.engine"]
    assert any("MulvvOp" in m for m in messages)
    assert any("SinOp" in m for m in messages)
    assert any("BeginOp" in m for m in messages)


def test_config_from_environment(monkeypatch):
    monkeypatch.setenv("AAD_REPLAY_CHECK", "0")
    monkeypatch.setenv("AAD_REPLAY_TRACE", "yes")
    cfg = SweepConfig.from_env()
    assert cfg == SweepConfig(check_integrity=False, trace=True)
    monkeypatch.delenv("AAD_REPLAY_CHECK")
    monkeypatch.delenv("AAD_REPLAY_TRACE")
    assert SweepConfig.from_env() == SweepConfig()


def test_package_logger_level_from_environment(monkeypatch):
    monkeypatch.setenv("AAD_REPLAY_LOG_LEVEL", "debug")
    logger = get_logger()
    assert logger.name == "aad_replay"
    assert logger.level == logging.DEBUG
    monkeypatch.delenv("AAD_REPLAY_LOG_LEVEL")
    assert get_logger().level == logging.WARNING
