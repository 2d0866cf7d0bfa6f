# aad_replay/ops/__init__.py
"""
Operator derivative library.

`REVERSE_RULES` maps each differentiable OpCode to a rule with the uniform
signature ``rule(d, i_z, arg, parameter, taylor, partial)``. Unary rules are
adapted so the engine can call every entry the same way.
"""
from ..core.opcode import OpCode
from .arithmetic import (
    reverse_addpv_op, reverse_addvv_op, reverse_csum_op,
    reverse_divpv_op, reverse_divvp_op, reverse_divvv_op,
    reverse_mulpv_op, reverse_mulvv_op,
    reverse_subpv_op, reverse_subvp_op, reverse_subvv_op,
)
from .transcendental import (
    reverse_acos_op, reverse_asin_op, reverse_atan_op,
    reverse_cos_op, reverse_cosh_op, reverse_exp_op, reverse_log_op,
    reverse_powpv_op, reverse_powvp_op, reverse_powvv_op,
    reverse_sin_op, reverse_sinh_op, reverse_sqrt_op,
    reverse_tan_op, reverse_tanh_op,
)
from .special import reverse_abs_op, reverse_cond_op, reverse_load_op, reverse_sign_op


def _unary(rule):
    def adapted(d, i_z, arg, parameter, taylor, partial):
        rule(d, i_z, arg[0], taylor, partial)
    adapted.__name__ = rule.__name__
    adapted.__doc__ = rule.__doc__
    return adapted


REVERSE_RULES = {
    OpCode.AddpvOp: reverse_addpv_op,
    OpCode.AddvvOp: reverse_addvv_op,
    OpCode.SubpvOp: reverse_subpv_op,
    OpCode.SubvpOp: reverse_subvp_op,
    OpCode.SubvvOp: reverse_subvv_op,
    OpCode.MulpvOp: reverse_mulpv_op,
    OpCode.MulvvOp: reverse_mulvv_op,
    OpCode.DivpvOp: reverse_divpv_op,
    OpCode.DivvpOp: reverse_divvp_op,
    OpCode.DivvvOp: reverse_divvv_op,
    OpCode.PowpvOp: reverse_powpv_op,
    OpCode.PowvpOp: reverse_powvp_op,
    OpCode.PowvvOp: reverse_powvv_op,
    OpCode.CSumOp: reverse_csum_op,
    OpCode.CExpOp: reverse_cond_op,
    OpCode.AbsOp: _unary(reverse_abs_op),
    OpCode.SignOp: _unary(reverse_sign_op),
    OpCode.ExpOp: _unary(reverse_exp_op),
    OpCode.LogOp: _unary(reverse_log_op),
    OpCode.SqrtOp: _unary(reverse_sqrt_op),
    OpCode.SinOp: _unary(reverse_sin_op),
    OpCode.CosOp: _unary(reverse_cos_op),
    OpCode.SinhOp: _unary(reverse_sinh_op),
    OpCode.CoshOp: _unary(reverse_cosh_op),
    OpCode.TanOp: _unary(reverse_tan_op),
    OpCode.TanhOp: _unary(reverse_tanh_op),
    OpCode.AsinOp: _unary(reverse_asin_op),
    OpCode.AcosOp: _unary(reverse_acos_op),
    OpCode.AtanOp: _unary(reverse_atan_op),
}

__all__ = ["REVERSE_RULES", "reverse_load_op"]
