"""Stopping tests of the SQP iteration.

Three measures are computed at the top of every iteration:

* primal infeasibility: the worst violation of the variable bounds and
  of the constraint bounds at the current point,
* dual infeasibility: the infinity norm of the Lagrangian gradient,
* step norm: the infinity norm of the last QP step (0 before the first).

They are tested in a fixed order and the first match wins: convergence,
then the iteration limit, then a vanishing step.
"""

from collections.abc import Callable
from typing import NamedTuple, Optional

import optimistix._misc as optx_misc
from jaxtyping import Array, Float

from sqpmethod_jax.merit import l1_infeasibility
from sqpmethod_jax.types import ReturnStatus


class IterationMeasures(NamedTuple):
    pr_inf: float
    du_inf: float
    dx_norm: float


def compute_measures(
    x: Float[Array, " n"],
    lbx: Float[Array, " n"],
    ubx: Float[Array, " n"],
    g: Float[Array, " m"],
    lbg: Float[Array, " m"],
    ubg: Float[Array, " m"],
    glag: Float[Array, " n"],
    dx: Float[Array, " n"],
    norm: Callable = optx_misc.max_norm,
) -> IterationMeasures:
    return IterationMeasures(
        pr_inf=float(l1_infeasibility(x, lbx, ubx, g, lbg, ubg)),
        du_inf=float(norm(glag)),
        dx_norm=float(norm(dx)),
    )


def check_termination(
    iteration: int,
    measures: IterationMeasures,
    *,
    min_iter: int,
    max_iter: int,
    tol_pr: float,
    tol_du: float,
    min_step_size: float,
) -> Optional[str]:
    """Return the terminal status for this iteration, or None to continue."""
    if (
        iteration >= min_iter
        and measures.pr_inf < tol_pr
        and measures.du_inf < tol_du
    ):
        return ReturnStatus.SUCCESS
    if iteration >= max_iter:
        return ReturnStatus.MAX_ITERATIONS
    if iteration >= 1 and iteration >= min_iter and measures.dx_norm <= min_step_size:
        return ReturnStatus.STEP_TOO_SMALL
    return None
