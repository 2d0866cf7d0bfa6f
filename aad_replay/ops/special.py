# aad_replay/ops/special.py
"""
Reverse rules for the piecewise operators: abs, sign, conditional
expressions and indexed loads.
"""
from ..core.opcode import CEXP_FALSE_VAR, CEXP_LEFT_VAR, CEXP_RIGHT_VAR, CEXP_TRUE_VAR, cond_exp


def reverse_abs_op(d, i_z, i_x, taylor, partial):
    """
    z = |x|. The sign is decided by the first non-zero coefficient of x;
    orders below it have zero derivative.
    """
    x = taylor[i_x]
    px, pz = partial[i_x], partial[i_z]

    # order that decides positive, negative or zero
    k = 0
    while k < d and x[k] == 0.0:
        k += 1
    if x[k] > 0.0:
        px[k:d + 1] += pz[k:d + 1]
    elif x[k] < 0.0:
        px[k:d + 1] -= pz[k:d + 1]


def reverse_sign_op(d, i_z, i_x, taylor, partial):
    # piecewise constant: nothing flows back
    return None


def reverse_cond_op(d, i_z, arg, parameter, taylor, partial):
    """
    z = cond_exp(cop, left, right, if_true, if_false)

    arg layout: [cop, flags, left, right, if_true, if_false]. The branch taken
    is decided from the order-zero values of the comparison operands; the
    adjoint goes to that branch only.
    """
    cop, flags = int(arg[0]), int(arg[1])
    left = taylor[arg[2], 0] if flags & CEXP_LEFT_VAR else parameter[arg[2]]
    right = taylor[arg[3], 0] if flags & CEXP_RIGHT_VAR else parameter[arg[3]]
    pz = partial[i_z, :d + 1]

    took_true = cond_exp(cop, left, right, True, False)
    if took_true and flags & CEXP_TRUE_VAR:
        partial[arg[4], :d + 1] += pz
    elif not took_true and flags & CEXP_FALSE_VAR:
        partial[arg[5], :d + 1] += pz


def reverse_load_op(d, i_z, arg, load_alias, partial):
    """
    z = v[i] for a dynamically indexed vector. `load_alias[arg[2]]` is the
    variable the forward sweep actually read, 0 when it read a parameter.
    """
    i_load = int(load_alias[arg[2]])
    if i_load > 0:
        partial[i_load, :d + 1] += partial[i_z, :d + 1]
