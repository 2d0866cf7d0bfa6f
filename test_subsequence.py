"""
Dependency marking and the filtered (single output) sweep.
"""

import math

import numpy as np
import pytest

from aad_replay import CompareOp, mark_dependencies, reverse, reverse_one, reverse_sweep
from taylor_reference import TaylorRecorder


def _program(X):
    t = TaylorRecorder(X)
    a, b, c = t.x
    f = a * b + t.sin(a)
    g = t.exp(c)
    h = t.csum([f, g], [b], constant=1.0) / (1.0 + c * c)
    k = t.cond_exp(CompareOp.Gt, a, b, t.tanh(f), g ** 2.0)
    m = t.load([a, c, 2.0], t.par(1.0)) * b
    taylor = t.finalize()
    return t, taylor, {"f": f, "g": g, "h": h, "k": k, "m": m}


X0 = np.array([[0.7, 0.2, -0.1], [0.3, -0.5, 0.2], [1.1, 0.1, 0.4]])


def test_marks_only_reachable_records():
    t, taylor, out = _program(X0[:, :1])
    var2op = t.rec.index().var2op
    positions = mark_dependencies(t.rec, out["g"].index, t.load_alias)
    assert positions == [var2op[out["g"].index], var2op[3], 0]

    positions = mark_dependencies(t.rec, out["f"].index, t.load_alias)
    assert var2op[out["g"].index] not in positions
    assert var2op[3] not in positions
    assert positions[-1] == 0
    assert positions == sorted(positions, reverse=True)


def test_loads_follow_the_alias_table():
    t, taylor, out = _program(X0[:, :1])
    var2op = t.rec.index().var2op
    positions = mark_dependencies(t.rec, out["m"].index, t.load_alias)
    # element 1 is c; a is not read by the load
    assert var2op[3] in positions
    assert var2op[2] in positions
    assert var2op[1] not in positions


@pytest.mark.parametrize("d", [0, 1, 2])
@pytest.mark.parametrize("name", ["f", "g", "h", "k", "m"])
def test_filtered_sweep_matches_one_hot_full_sweep(name, d):
    t, taylor, out = _program(X0[:, :d + 1])
    dep = out[name].index
    full = reverse(t.rec, d, taylor, [1.0], dep_vars=[dep], load_alias=t.load_alias)
    filtered = reverse_one(t.rec, d, taylor, dep, load_alias=t.load_alias)
    np.testing.assert_allclose(filtered, full, rtol=1e-13, atol=1e-15)


def test_weight_scales_the_filtered_result():
    t, taylor, out = _program(X0[:, :1])
    dep = out["h"].index
    one = reverse_one(t.rec, 0, taylor, dep, load_alias=t.load_alias)
    scaled = reverse_one(t.rec, 0, taylor, dep, weight=-2.0, load_alias=t.load_alias)
    np.testing.assert_allclose(scaled, -2.0 * one)


def test_filtered_product_plus_sine():
    t = TaylorRecorder([[2.0], [3.0]])
    a, b = t.x
    y = a * b + t.sin(a)
    t.exp(b)
    taylor = t.finalize()
    got = reverse_one(t.rec, 0, taylor, y.index)
    np.testing.assert_allclose(got, [[3.0 + math.cos(2.0)], [2.0]], rtol=1e-14)


def test_positions_must_be_decreasing_and_end_at_begin():
    t, taylor, out = _program(X0[:, :1])
    rec = t.rec
    dep = out["g"].index
    positions = mark_dependencies(rec, dep, t.load_alias)

    def sweep(pos):
        partial = np.zeros((rec.num_var, 1))
        partial[dep, 0] = 1.0
        reverse_sweep(0, rec.num_ind, rec.num_var, rec, taylor, partial,
                      load_alias=t.load_alias, positions=pos)

    sweep(positions)
    with pytest.raises(ValueError):
        sweep(positions[:-1])
    with pytest.raises(ValueError):
        sweep([positions[1], positions[0], 0])


def test_bad_dependent_variable_is_rejected():
    t, taylor, out = _program(X0[:, :1])
    with pytest.raises(ValueError):
        mark_dependencies(t.rec, 0, t.load_alias)
    with pytest.raises(ValueError):
        mark_dependencies(t.rec, t.rec.num_var, t.load_alias)


def test_load_alias_required_when_tape_has_loads():
    t, taylor, out = _program(X0[:, :1])
    with pytest.raises(ValueError):
        mark_dependencies(t.rec, out["m"].index)
