# aad_replay/ops/arithmetic.py
"""
Reverse rules for + - * / and the cumulative sum.

Common signature
----------------
    rule(d, i_z, arg, parameter, taylor, partial)

d         : highest Taylor order being differentiated
i_z       : variable index of the result
arg       : argument view of the record (arg[0], arg[1] are the operands)
parameter : parameter vector of the recording
taylor    : (num_var, J) forward coefficients, read only
partial   : (num_var, K) adjoints, accumulated in place

Suffixes name the operand kinds: vv = variable op variable, pv = parameter
op variable, vp = variable op parameter. The result's own partial row is
working storage and may be rescaled by a rule.
"""


def reverse_addvv_op(d, i_z, arg, parameter, taylor, partial):
    pz = partial[i_z, :d + 1]
    partial[arg[0], :d + 1] += pz
    partial[arg[1], :d + 1] += pz


def reverse_addpv_op(d, i_z, arg, parameter, taylor, partial):
    partial[arg[1], :d + 1] += partial[i_z, :d + 1]


def reverse_subvv_op(d, i_z, arg, parameter, taylor, partial):
    pz = partial[i_z, :d + 1]
    partial[arg[0], :d + 1] += pz
    partial[arg[1], :d + 1] -= pz


def reverse_subpv_op(d, i_z, arg, parameter, taylor, partial):
    partial[arg[1], :d + 1] -= partial[i_z, :d + 1]


def reverse_subvp_op(d, i_z, arg, parameter, taylor, partial):
    partial[arg[0], :d + 1] += partial[i_z, :d + 1]


def reverse_mulvv_op(d, i_z, arg, parameter, taylor, partial):
    """
    z = x * y,  z[j] = sum_k x[j-k] * y[k]
    """
    x, y = taylor[arg[0]], taylor[arg[1]]
    px, py = partial[arg[0]], partial[arg[1]]
    pz = partial[i_z]
    for j in range(d, -1, -1):
        for k in range(j + 1):
            px[j - k] += pz[j] * y[k]
            py[k] += pz[j] * x[j - k]


def reverse_mulpv_op(d, i_z, arg, parameter, taylor, partial):
    x = parameter[arg[0]]
    py = partial[arg[1]]
    pz = partial[i_z]
    for j in range(d, -1, -1):
        py[j] += pz[j] * x


def reverse_divvv_op(d, i_z, arg, parameter, taylor, partial):
    """
    z = x / y,  z[j] = ( x[j] - sum_{k=1}^{j} z[j-k] * y[k] ) / y[0]

    Division by zero is not an error here; a conditional expression may
    legitimately record it.
    """
    y = taylor[arg[1]]
    z = taylor[i_z]
    px, py = partial[arg[0]], partial[arg[1]]
    pz = partial[i_z]
    for j in range(d, -1, -1):
        # scale partial w.r.t. z[j]
        pz[j] /= y[0]

        px[j] += pz[j]
        for k in range(1, j + 1):
            pz[j - k] -= pz[j] * y[k]
            py[k] -= pz[j] * z[j - k]
        py[0] -= pz[j] * z[j]


def reverse_divpv_op(d, i_z, arg, parameter, taylor, partial):
    y = taylor[arg[1]]
    z = taylor[i_z]
    py = partial[arg[1]]
    pz = partial[i_z]
    for j in range(d, -1, -1):
        pz[j] /= y[0]
        for k in range(1, j + 1):
            pz[j - k] -= pz[j] * y[k]
            py[k] -= pz[j] * z[j - k]
        py[0] -= pz[j] * z[j]


def reverse_divvp_op(d, i_z, arg, parameter, taylor, partial):
    y = parameter[arg[1]]
    px = partial[arg[0]]
    pz = partial[i_z]
    for j in range(d, -1, -1):
        px[j] += pz[j] / y


def reverse_csum_op(d, i_z, arg, parameter, taylor, partial):
    """
    z = p + x_1 + ... + x_a - y_1 - ... - y_s

    arg layout: [a, s, p, x_1..x_a, y_1..y_s, 3+a+s]
    """
    pz = partial[i_z, :d + 1]
    n_add, n_sub = int(arg[0]), int(arg[1])
    for i_x in arg[3:3 + n_add]:
        partial[i_x, :d + 1] += pz
    for i_y in arg[3 + n_add:3 + n_add + n_sub]:
        partial[i_y, :d + 1] -= pz
