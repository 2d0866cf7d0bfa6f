# aad_replay/ops/transcendental.py
"""
Reverse rules for exp, log, sqrt, pow and the trigonometric / hyperbolic
families.

Unary rules take the operand index directly:

    rule(d, i_z, i_x, taylor, partial)

Operators recorded with an auxiliary result keep it in the row below the
result (i_z - 1):

    sin  / cos   : the companion cos / sin
    sinh / cosh  : the companion cosh / sinh
    tan  / tanh  : z * z
    asin / acos  : sqrt(1 - x * x)
    atan         : 1 + x * x

pow is recorded as exp(y * log(x)) with log(x) at i_z - 2 and y * log(x) at
i_z - 1, and is reversed through the exp, mul and log rules.
"""
from .arithmetic import reverse_mulpv_op, reverse_mulvv_op


def reverse_exp_op(d, i_z, i_x, taylor, partial):
    x, z = taylor[i_x], taylor[i_z]
    px, pz = partial[i_x], partial[i_z]
    for j in range(d, 0, -1):
        # scale partial w.r.t z[j]
        pz[j] /= j
        for k in range(1, j + 1):
            px[k] += pz[j] * k * z[j - k]
            pz[j - k] += pz[j] * k * x[k]
    px[0] += pz[0] * z[0]


def reverse_log_op(d, i_z, i_x, taylor, partial):
    x, z = taylor[i_x], taylor[i_z]
    px, pz = partial[i_x], partial[i_z]
    for j in range(d, 0, -1):
        # scale partial w.r.t z[j]
        pz[j] /= x[0]

        px[0] -= pz[j] * z[j]
        px[j] += pz[j]

        # further scale partial w.r.t. z[j]
        pz[j] /= j
        for k in range(1, j):
            pz[k] -= pz[j] * k * x[j - k]
            px[j - k] -= pz[j] * k * z[k]
    px[0] += pz[0] / x[0]


def reverse_sqrt_op(d, i_z, i_x, taylor, partial):
    z = taylor[i_z]
    px, pz = partial[i_x], partial[i_z]
    for j in range(d, 0, -1):
        pz[j] /= z[0]
        pz[0] -= pz[j] * z[j]
        px[j] += pz[j] / 2.0
        for k in range(1, j):
            pz[k] -= pz[j] * z[j - k]
    px[0] += pz[0] / (2.0 * z[0])


# ---------- sin / cos ----------
def _reverse_sin_cos(d, s, c, ps, pc, x, px):
    # s' = c x',  c' = -s x'
    for j in range(d, 0, -1):
        ps[j] /= j
        pc[j] /= j
        for k in range(1, j + 1):
            px[k] += ps[j] * k * c[j - k]
            px[k] -= pc[j] * k * s[j - k]

            ps[j - k] -= pc[j] * k * x[k]
            pc[j - k] += ps[j] * k * x[k]
    px[0] += ps[0] * c[0]
    px[0] -= pc[0] * s[0]


def reverse_sin_op(d, i_z, i_x, taylor, partial):
    _reverse_sin_cos(
        d, taylor[i_z], taylor[i_z - 1], partial[i_z], partial[i_z - 1],
        taylor[i_x], partial[i_x],
    )


def reverse_cos_op(d, i_z, i_x, taylor, partial):
    _reverse_sin_cos(
        d, taylor[i_z - 1], taylor[i_z], partial[i_z - 1], partial[i_z],
        taylor[i_x], partial[i_x],
    )


# ---------- sinh / cosh ----------
def _reverse_sinh_cosh(d, s, c, ps, pc, x, px):
    # s' = c x',  c' = s x'
    for j in range(d, 0, -1):
        ps[j] /= j
        pc[j] /= j
        for k in range(1, j + 1):
            px[k] += ps[j] * k * c[j - k]
            px[k] += pc[j] * k * s[j - k]

            ps[j - k] += pc[j] * k * x[k]
            pc[j - k] += ps[j] * k * x[k]
    px[0] += ps[0] * c[0]
    px[0] += pc[0] * s[0]


def reverse_sinh_op(d, i_z, i_x, taylor, partial):
    _reverse_sinh_cosh(
        d, taylor[i_z], taylor[i_z - 1], partial[i_z], partial[i_z - 1],
        taylor[i_x], partial[i_x],
    )


def reverse_cosh_op(d, i_z, i_x, taylor, partial):
    _reverse_sinh_cosh(
        d, taylor[i_z - 1], taylor[i_z], partial[i_z - 1], partial[i_z],
        taylor[i_x], partial[i_x],
    )


# ---------- tan / tanh ----------
def _reverse_tan_family(d, i_z, i_x, taylor, partial, sign):
    # z' = (1 + sign * y) x',  y = z * z
    x, z, y = taylor[i_x], taylor[i_z], taylor[i_z - 1]
    px, pz, py = partial[i_x], partial[i_z], partial[i_z - 1]
    for j in range(d, 0, -1):
        px[j] += pz[j]
        pz[j] /= j
        for k in range(1, j + 1):
            px[k] += sign * (pz[j] * y[j - k] * k)
            py[j - k] += sign * (pz[j] * x[k] * k)
        for k in range(j):
            pz[k] += py[j - 1] * z[j - k - 1] * 2.0
    px[0] += pz[0] * (1.0 + sign * y[0])


def reverse_tan_op(d, i_z, i_x, taylor, partial):
    _reverse_tan_family(d, i_z, i_x, taylor, partial, 1.0)


def reverse_tanh_op(d, i_z, i_x, taylor, partial):
    _reverse_tan_family(d, i_z, i_x, taylor, partial, -1.0)


# ---------- inverse trigonometric ----------
def reverse_asin_op(d, i_z, i_x, taylor, partial):
    """z = asin(x), b = sqrt(1 - x * x) stored at i_z - 1."""
    x, z, b = taylor[i_x], taylor[i_z], taylor[i_z - 1]
    px, pz, pb = partial[i_x], partial[i_z], partial[i_z - 1]
    for j in range(d, 0, -1):
        # scale partials w.r.t b[j] and z[j] by 1 / b[0]
        pb[j] /= b[0]
        pz[j] /= b[0]

        pb[0] -= pz[j] * z[j] + pb[j] * b[j]
        px[0] -= pb[j] * x[j]
        px[j] += pz[j] - pb[j] * x[0]

        # further scale partial w.r.t. z[j] by 1 / j
        pz[j] /= j
        for k in range(1, j):
            pb[j - k] -= k * pz[j] * z[k] + pb[j] * b[k]
            px[k] -= pb[j] * x[j - k]
            pz[k] -= pz[j] * k * b[j - k]
    px[0] += (pz[0] - pb[0] * x[0]) / b[0]


def reverse_acos_op(d, i_z, i_x, taylor, partial):
    """z = acos(x), b = sqrt(1 - x * x) stored at i_z - 1."""
    x, z, b = taylor[i_x], taylor[i_z], taylor[i_z - 1]
    px, pz, pb = partial[i_x], partial[i_z], partial[i_z - 1]
    for j in range(d, 0, -1):
        pb[j] /= b[0]
        pz[j] /= b[0]

        pb[0] -= pz[j] * z[j] + pb[j] * b[j]
        px[0] -= pb[j] * x[j]
        px[j] -= pz[j] + pb[j] * x[0]

        pz[j] /= j
        for k in range(1, j):
            pb[j - k] -= k * pz[j] * z[k] + pb[j] * b[k]
            px[k] -= pb[j] * x[j - k]
            pz[k] -= pz[j] * k * b[j - k]
    px[0] -= (pz[0] + pb[0] * x[0]) / b[0]


def reverse_atan_op(d, i_z, i_x, taylor, partial):
    """z = atan(x), b = 1 + x * x stored at i_z - 1."""
    x, z, b = taylor[i_x], taylor[i_z], taylor[i_z - 1]
    px, pz, pb = partial[i_x], partial[i_z], partial[i_z - 1]
    for j in range(d, 0, -1):
        pz[j] /= b[0]
        pb[j] *= 2.0

        pb[0] -= pz[j] * z[j]
        px[j] += pz[j] + pb[j] * x[0]
        px[0] += pb[j] * x[j]

        pz[j] /= j
        for k in range(1, j):
            pb[j - k] -= pz[j] * k * z[k]
            pz[k] -= pz[j] * k * b[j - k]
            px[k] += pb[j] * x[j - k]
    px[0] += pz[0] / b[0] + pb[0] * 2.0 * x[0]


# ---------- pow ----------
def reverse_powvv_op(d, i_z, arg, parameter, taylor, partial):
    # z_2 = exp(z_1)
    reverse_exp_op(d, i_z, i_z - 1, taylor, partial)
    # z_1 = z_0 * y
    reverse_mulvv_op(d, i_z - 1, (i_z - 2, arg[1]), parameter, taylor, partial)
    # z_0 = log(x)
    reverse_log_op(d, i_z - 2, arg[0], taylor, partial)


def reverse_powpv_op(d, i_z, arg, parameter, taylor, partial):
    reverse_exp_op(d, i_z, i_z - 1, taylor, partial)
    # z_1 = z_0 * y where z_0 = log(x) is constant; its value sits in taylor
    reverse_mulpv_op(d, i_z - 1, (0, arg[1]), taylor[i_z - 2, :1], taylor, partial)


def reverse_powvp_op(d, i_z, arg, parameter, taylor, partial):
    reverse_exp_op(d, i_z, i_z - 1, taylor, partial)
    # z_1 = y * z_0
    reverse_mulpv_op(d, i_z - 1, (arg[1], i_z - 2), parameter, taylor, partial)
    reverse_log_op(d, i_z - 2, arg[0], taylor, partial)
