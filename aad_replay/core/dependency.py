# aad_replay/core/dependency.py
"""
Dependency marking for single-output reverse sweeps.

Only records reachable backwards from the record that defines the chosen
output can contribute to its adjoints; `mark_dependencies` finds them so a
sweep can skip the rest of the tape.
"""
from __future__ import annotations
import logging
from typing import List, Optional

import numpy as np

from .opcode import OpCode, operand_kinds
from .recording import Recording

logger = logging.getLogger(__name__)


def mark_dependencies(recording: Recording, dep_var: int,
                      load_alias: Optional[np.ndarray] = None) -> List[int]:
    """
    Record positions that `dep_var` depends on, in decreasing order.

    Parameters
    ----------
    recording  : finalized Recording
    dep_var    : variable index of the output, 1 <= dep_var < num_var
    load_alias : variable read by each load record (required if the tape
                 has load records)

    Returns
    -------
    list[int] ending with 0 (BeginOp), suitable as `positions=` for
    `reverse_sweep`.

    Notes
    -----
    - Loads are followed through `load_alias`; the index operand of a load
      does not carry a derivative and is not followed.
    - Touching any record of an atomic call marks the whole call, and all of
      its variable arguments are followed.
    - Comparison operands of conditional expressions are followed as well,
      so the set may be slightly larger than strictly needed.
    """
    index = recording.index()
    if not 0 < dep_var < recording.num_var:
        raise ValueError(f"dep_var={dep_var} is not a variable of the recording")
    if load_alias is None:
        if recording.num_load_op:
            raise ValueError("load_alias is required for a recording with load records")
        load_alias = np.zeros(0, dtype=np.intp)
    load_alias = np.asarray(load_alias, dtype=np.intp)

    marked = np.zeros(recording.num_op, dtype=bool)
    start = int(index.var2op[dep_var])
    marked[start] = True

    for i_op in range(start, 0, -1):
        if not marked[i_op]:
            continue
        open_at, close_at = index.block[i_op]
        if open_at >= 0:
            marked[open_at:close_at + 1] = True
        rec = index.record(i_op)
        if rec.op in (OpCode.LdpOp, OpCode.LdvOp):
            alias = int(load_alias[rec.arg[2]])
            variables = [alias] if alias > 0 else []
        else:
            variables, _ = operand_kinds(rec.op, rec.arg)
        for v in variables:
            marked[index.var2op[v]] = True

    marked[0] = True
    positions = [int(i) for i in np.flatnonzero(marked)[::-1]]
    logger.debug("dependencies of variable %d: %d of %d records",
                 dep_var, len(positions), recording.num_op)
    return positions
