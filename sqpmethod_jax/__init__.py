"""sqpmethod-jax: Sequential Quadratic Programming in JAX.

This package provides an SQP method for nonlinear programs with variable
bounds and two-sided nonlinear constraints. Each iteration solves a convex
QP subproblem through a pluggable solver, globalized by a nonmonotone
line search on the L1 merit function, with either the exact Hessian of the
Lagrangian or a damped limited-memory BFGS approximation.
"""

from sqpmethod_jax.convergence import (
    IterationMeasures,
    check_termination,
    compute_measures,
)
from sqpmethod_jax.hessian import (
    ExactHessian,
    LimitedMemoryHessian,
    bfgs_reset,
    bfgs_update,
    compute_lagrangian_gradient,
    gershgorin_regularization,
)
from sqpmethod_jax.merit import (
    LineSearchResult,
    MeritMemory,
    backtracking_line_search,
    compute_merit,
    l1_infeasibility,
    merit_memory_init,
    merit_memory_push,
    update_penalty_parameter,
)
from sqpmethod_jax.problem import (
    AbstractNLP,
    FunctionEvaluationError,
    InstrumentedNLP,
    JaxNLP,
)
from sqpmethod_jax.qp_solver import (
    AbstractQPSolver,
    ActiveSetQPSolver,
    QPSolution,
    available_qpsols,
    get_qpsol,
    register_qpsol,
)
from sqpmethod_jax.solver import NLPBounds, SQPMethod, SQPResult, SQPState
from sqpmethod_jax.sparsity import Sparsity
from sqpmethod_jax.types import (
    ConstraintFn,
    GradFn,
    HessianFn,
    IterationCallback,
    JacobianFn,
    ObjectiveFn,
    ReturnStatus,
)

__all__ = [
    # Main solver
    "SQPMethod",
    "SQPState",
    "SQPResult",
    "NLPBounds",
    "ReturnStatus",
    # Problem interface
    "AbstractNLP",
    "JaxNLP",
    "InstrumentedNLP",
    "FunctionEvaluationError",
    "Sparsity",
    # Types
    "ObjectiveFn",
    "ConstraintFn",
    "GradFn",
    "JacobianFn",
    "HessianFn",
    "IterationCallback",
    # QP solvers
    "AbstractQPSolver",
    "ActiveSetQPSolver",
    "QPSolution",
    "get_qpsol",
    "register_qpsol",
    "available_qpsols",
    # Hessian
    "ExactHessian",
    "LimitedMemoryHessian",
    "bfgs_reset",
    "bfgs_update",
    "gershgorin_regularization",
    "compute_lagrangian_gradient",
    # Merit function and line search
    "LineSearchResult",
    "MeritMemory",
    "merit_memory_init",
    "merit_memory_push",
    "l1_infeasibility",
    "compute_merit",
    "update_penalty_parameter",
    "backtracking_line_search",
    # Stopping tests
    "IterationMeasures",
    "compute_measures",
    "check_termination",
]
