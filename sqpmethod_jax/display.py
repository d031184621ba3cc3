"""Header and iteration table of the SQP method, emitted through logging."""

import logging
import math

_log = logging.getLogger(__name__)


def print_header(exact_hessian: bool, nx: int, ng: int, jac_nnz: int, hess_nnz: int):
    _log.info("-------------------------------------------")
    _log.info("This is sqpmethod_jax.SQPMethod.")
    if exact_hessian:
        _log.info("Using exact Hessian")
    else:
        _log.info("Using limited memory BFGS Hessian approximation")
    _log.info("Number of variables:                       %9d", nx)
    _log.info("Number of constraints:                     %9d", ng)
    _log.info("Number of nonzeros in constraint Jacobian: %9d", jac_nnz)
    _log.info("Number of nonzeros in Lagrangian Hessian:  %9d", hess_nnz)


def iteration_header() -> str:
    return "%4s %14s %9s %9s %9s %7s %2s" % (
        "iter",
        "objective",
        "inf_pr",
        "inf_du",
        "||d||",
        "lg(rg)",
        "ls",
    )


def iteration_line(
    iteration: int,
    objective: float,
    pr_inf: float,
    du_inf: float,
    dx_norm: float,
    reg: float,
    ls_trials: int,
    ls_success: bool,
) -> str:
    line = "%4d %14.6e %9.2e %9.2e %9.2e " % (
        iteration,
        objective,
        pr_inf,
        du_inf,
        dx_norm,
    )
    line += "%7.2f " % math.log10(reg) if reg > 0 else "%7s " % "-"
    line += "%2d" % ls_trials
    if not ls_success:
        line += "F"
    return line


def print_iteration(iteration: int, *args) -> None:
    # Repeat the column header every 10 iterations
    if iteration % 10 == 0:
        _log.info(iteration_header())
    _log.info(iteration_line(iteration, *args))
