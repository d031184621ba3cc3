"""SQP method driver.

This module contains the :class:`SQPMethod` solver, which minimizes

    f(x)  subject to  lbx <= x <= ubx,  lbg <= g(x) <= ubg

by Sequential Quadratic Programming. At each iteration, it:

1. Measures primal/dual infeasibility and the last step, calls the
   iteration callback and checks the stopping tests.
2. Linearizes the bounds around the current point and solves the QP
   subproblem with the current Hessian approximation.
3. Raises the merit penalty above the QP duals and runs a nonmonotone
   backtracking line search on the L1 merit function.
4. Blends the multipliers towards the QP duals, re-evaluates the
   gradient and Jacobian at the new point and updates the Hessian
   (exactly, or by a damped BFGS update).

The Hessian mode is fixed at construction:

1. Exact (default): the Hessian of the Lagrangian is re-evaluated at
   every iterate, optionally shifted by a Gershgorin regularization.
2. Limited-memory: a dense damped BFGS approximation restarted from the
   identity every ``lbfgs_memory`` iterations.

The low-level ``init`` / ``terminate`` / ``step`` / ``postprocess``
methods follow the optimistix minimiser protocol so a loop can inspect
the iterate record between iterations; ``solve`` runs the whole loop.
"""

import contextlib
import logging
from collections.abc import Callable
from typing import Any, Optional

import equinox as eqx
import jax
import jax.numpy as jnp
import optimistix._misc as optx_misc
from jaxtyping import Array, Float

from sqpmethod_jax import display
from sqpmethod_jax.convergence import (
    IterationMeasures,
    check_termination,
    compute_measures,
)
from sqpmethod_jax.hessian import (
    AbstractHessianApproximation,
    compute_lagrangian_gradient,
    make_hessian_approximation,
)
from sqpmethod_jax.merit import (
    MeritMemory,
    backtracking_line_search,
    compute_merit,
    l1_infeasibility,
    merit_memory_init,
    merit_memory_push,
    update_penalty_parameter,
)
from sqpmethod_jax.problem import AbstractNLP, InstrumentedNLP
from sqpmethod_jax.qp_solver import AbstractQPSolver, get_qpsol
from sqpmethod_jax.types import IterationCallback, ReturnStatus
from sqpmethod_jax.utils import FunctionStats

_log = logging.getLogger(__name__)

_TIMED_FUNCTIONS = (
    "nlp_fg",
    "nlp_grad_f",
    "nlp_jac_g",
    "nlp_hess_l",
    "qpsol",
    "callback_fun",
)


class NLPBounds(eqx.Module):
    """Variable and constraint bounds of one solve."""

    lbx: Float[Array, " n"]
    ubx: Float[Array, " n"]
    lbg: Float[Array, " m"]
    ubg: Float[Array, " m"]


class SQPState(eqx.Module):
    """Iterate record of the SQP method.

    Created fresh by :meth:`SQPMethod.init` for every solve and replaced by
    :meth:`SQPMethod.step` at every iteration.

    Attributes:
        iteration: Number of completed SQP iterations.
        p: Fixed problem parameters.
        bounds: Variable and constraint bounds.
        xk: Current linearization point.
        x_old: Previous linearization point.
        fk: Objective value at xk.
        gk: Constraint values at xk.
        gf: Objective gradient at xk.
        Jk: Nonzeros of the constraint Jacobian at xk.
        Bk: Nonzeros of the Hessian approximation.
        mu: Constraint multipliers.
        mu_x: Bound multipliers.
        gLag: Lagrangian gradient at xk.
        gLag_old: Lagrangian gradient at x_old with the current multipliers
            (limited-memory mode only).
        dx: Last QP step (zero before the first iteration).
        qp_dual_x: QP duals of the variable bounds.
        qp_dual_a: QP duals of the linearized constraints.
        sigma: Merit penalty parameter, nondecreasing within a solve.
        merit_memory: Window of recent merit values.
        reg: Last Gershgorin regularization shift (0 if none).
        step_size: Step length accepted by the last line search.
        ls_trials: Trials of the last line search.
        ls_success: Whether the last line search met the Armijo test.
        total_ls_trials: Line-search trials over the whole solve.
    """

    # Iteration tracking
    iteration: int

    # Fixed data of this solve
    p: Any
    bounds: NLPBounds

    # Primal iterate and function values
    xk: Float[Array, " n"]
    x_old: Float[Array, " n"]
    fk: Float[Array, ""]
    gk: Float[Array, " m"]
    gf: Float[Array, " n"]
    Jk: Float[Array, " nnz_j"]

    # Hessian approximation on its fixed pattern
    Bk: Float[Array, " nnz_h"]

    # Multipliers and Lagrangian gradients
    mu: Float[Array, " m"]
    mu_x: Float[Array, " n"]
    gLag: Float[Array, " n"]
    gLag_old: Float[Array, " n"]

    # Last QP solution
    dx: Float[Array, " n"]
    qp_dual_x: Float[Array, " n"]
    qp_dual_a: Float[Array, " m"]

    # Globalization
    sigma: float
    merit_memory: MeritMemory
    reg: float
    step_size: float
    ls_trials: int
    ls_success: bool
    total_ls_trials: int


class SQPResult(eqx.Module):
    """Outcome of :meth:`SQPMethod.solve`.

    Attributes:
        f: Final objective value.
        x: Final point.
        lam_g: Final constraint multipliers.
        lam_x: Final bound multipliers.
        g: Final constraint values.
        return_status: One of the :class:`ReturnStatus` tags.
        iter_count: Number of SQP iterations.
        stats: Solver statistics (call counts, timings, penalty, ...).
    """

    f: Float[Array, ""]
    x: Float[Array, " n"]
    lam_g: Float[Array, " m"]
    lam_x: Float[Array, " n"]
    g: Float[Array, " m"]
    return_status: str = eqx.field(static=True)
    iter_count: int = eqx.field(static=True)
    stats: dict = eqx.field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.return_status == ReturnStatus.SUCCESS


def _timed(problem: AbstractNLP, name: str):
    if isinstance(problem, InstrumentedNLP):
        return problem.stats.timed(name)
    return contextlib.nullcontext()


def _default_float():
    return jax.dtypes.canonicalize_dtype(jnp.float64)


def _as_vector(value, n: int, default: float, name: str) -> Float[Array, " k"]:
    if value is None:
        return jnp.full((n,), default, dtype=_default_float())
    arr = jnp.asarray(value, dtype=_default_float())
    if arr.ndim == 0:
        return jnp.full((n,), arr)
    if arr.shape != (n,):
        raise ValueError(f"{name} must have shape ({n},), got {arr.shape}")
    return arr


class SQPMethod(eqx.Module):
    """SQP solver for constrained nonlinear programs.

    Attributes:
        qpsol: Name of the QP solver plugin.
        qpsol_options: Options forwarded verbatim to the QP solver plugin.
        hessian_approximation: ``"exact"`` or ``"limited-memory"``.
        max_iter: Maximum number of SQP iterations.
        min_iter: Minimum number of SQP iterations.
        max_iter_ls: Maximum number of line-search trials; 0 disables the
            line search and always takes the full step.
        tol_pr: Stopping tolerance on primal infeasibility.
        tol_du: Stopping tolerance on dual infeasibility.
        c1: Armijo coefficient of decrease in merit.
        beta: Backtracking factor of the line search.
        merit_memory: Number of merit values kept for the nonmonotone test.
        lbfgs_memory: Restart period of the limited-memory approximation.
        regularize: Gershgorin regularization of the exact Hessian.
        min_step_size: Stop when the step infinity norm drops below this.
        print_header: Log problem statistics before iterating.
        print_iteration: Log one table row per iteration.
        iteration_callback: Called as ``callback(f, x, lam_g, lam_x, g)``
            each iteration; a nonzero return stops the solve.
        iteration_callback_step: Call the callback every this many iterations.
        iteration_callback_ignore_errors: When False, an exception raised by
            the callback stops the solve instead of being ignored.
        norm: Norm of the dual infeasibility and step (infinity norm).

    Example:
        >>> import jax.numpy as jnp
        >>> from sqpmethod_jax import JaxNLP, SQPMethod
        >>>
        >>> nlp = JaxNLP(
        ...     f=lambda x, p: jnp.sum(x**2),
        ...     nx=2,
        ...     g=lambda x, p: jnp.array([x[0] + x[1]]),
        ...     ng=1,
        ... )
        >>> solver = SQPMethod(print_header=False, print_iteration=False)
        >>> result = solver.solve(nlp, jnp.zeros(2), lbg=1.0, ubg=1.0)
    """

    # QP subproblem
    qpsol: str = eqx.field(static=True, default="active_set")
    qpsol_options: dict = eqx.field(default_factory=dict)

    # Hessian mode
    hessian_approximation: str = eqx.field(static=True, default="exact")
    lbfgs_memory: int = eqx.field(static=True, default=10)
    regularize: bool = eqx.field(static=True, default=False)

    # Iteration limits and tolerances
    max_iter: int = eqx.field(static=True, default=50)
    min_iter: int = eqx.field(static=True, default=0)
    tol_pr: float = 1e-6
    tol_du: float = 1e-6
    min_step_size: float = 1e-10

    # Line search parameters
    max_iter_ls: int = eqx.field(static=True, default=3)
    c1: float = 1e-4
    beta: float = 0.8
    merit_memory: int = eqx.field(static=True, default=4)

    # Output
    print_header: bool = eqx.field(static=True, default=True)
    print_iteration: bool = eqx.field(static=True, default=True)

    # Iteration callback
    iteration_callback: Optional[IterationCallback] = eqx.field(
        static=True, default=None
    )
    iteration_callback_step: int = eqx.field(static=True, default=1)
    iteration_callback_ignore_errors: bool = eqx.field(static=True, default=True)

    # Norm function for convergence checking
    norm: Callable = eqx.field(static=True, default=optx_misc.max_norm)

    # Built from the options above
    _qp_solver: Optional[AbstractQPSolver] = eqx.field(static=True, default=None)
    _hessian: Optional[AbstractHessianApproximation] = eqx.field(
        static=True, default=None
    )

    def __check_init__(self):
        """Validate the options and build the QP solver and Hessian strategy.

        This is called by equinox after __init__, so configuration errors
        surface before any iteration starts.
        """
        if self.max_iter < 0:
            raise ValueError("max_iter must be nonnegative")
        if self.min_iter < 0:
            raise ValueError("min_iter must be nonnegative")
        if self.max_iter_ls < 0:
            raise ValueError("max_iter_ls must be nonnegative")
        if not 0.0 < self.c1 < 1.0:
            raise ValueError("c1 must lie in (0, 1)")
        if not 0.0 < self.beta < 1.0:
            raise ValueError("beta must lie in (0, 1)")
        if self.merit_memory < 1:
            raise ValueError("merit_memory must be at least 1")
        if not (self.tol_pr > 0 and self.tol_du > 0):
            raise ValueError("tol_pr and tol_du must be positive")
        if self.min_step_size < 0:
            raise ValueError("min_step_size must be nonnegative")
        if self.iteration_callback_step < 1:
            raise ValueError("iteration_callback_step must be at least 1")
        if self.iteration_callback is not None and not callable(
            self.iteration_callback
        ):
            raise ValueError("iteration_callback must be callable")

        object.__setattr__(
            self, "_qp_solver", get_qpsol(self.qpsol, self.qpsol_options)
        )
        object.__setattr__(
            self,
            "_hessian",
            make_hessian_approximation(
                self.hessian_approximation, self.regularize, self.lbfgs_memory
            ),
        )

    @classmethod
    def from_options(cls, options: Optional[dict[str, Any]] = None) -> "SQPMethod":
        """Build a solver from an option dictionary, rejecting unknown keys."""
        options = dict(options or {})
        known = {
            name
            for name in cls.__dataclass_fields__
            if not name.startswith("_")
        }
        unknown = sorted(set(options) - known)
        if unknown:
            raise ValueError(
                f"Unknown option(s) {', '.join(unknown)}; "
                f"known options are {', '.join(sorted(known))}"
            )
        return cls(**options)

    @property
    def exact_hessian(self) -> bool:
        return self.hessian_approximation == "exact"

    def check_inputs(self, problem: AbstractNLP, x0, bounds: NLPBounds) -> None:
        """Reject ill-posed bounds and mismatched problem patterns."""
        nx, ng = problem.nx, problem.ng
        if x0.shape != (nx,):
            raise ValueError(f"x0 must have shape ({nx},), got {x0.shape}")
        if problem.jac_sparsity().shape != (ng, nx):
            raise ValueError("Jacobian sparsity does not match the problem size")
        if self._hessian.sparsity(problem).shape != (nx, nx):
            raise ValueError("Hessian sparsity does not match the problem size")
        for lb, ub, name in (
            (bounds.lbx, bounds.ubx, "X"),
            (bounds.lbg, bounds.ubg, "G"),
        ):
            bad = jnp.flatnonzero(lb > ub)
            if bad.size:
                i = int(bad[0])
                raise ValueError(
                    f"Ill-posed problem detected: LB{name}[{i}] > UB{name}[{i}] "
                    f"({float(lb[i])} > {float(ub[i])})"
                )
            if bool(jnp.any(lb == jnp.inf)) or bool(jnp.any(ub == -jnp.inf)):
                raise ValueError(
                    f"Ill-posed problem detected: LB{name} equal to inf "
                    f"or UB{name} equal to -inf"
                )

    def init(
        self,
        problem: AbstractNLP,
        x0,
        p: Any = None,
        lbx=None,
        ubx=None,
        lbg=None,
        ubg=None,
        lam_x0=None,
        lam_g0=None,
    ) -> SQPState:
        """Initialize the iterate record at the initial guess.

        Evaluates the constraint Jacobian (if there are constraints), the
        objective gradient and the initial Hessian approximation, and the
        initial Lagrangian gradient.

        Args:
            problem: The nonlinear program.
            x0: Initial guess.
            p: Fixed problem parameters, passed to every evaluation.
            lbx: Variable lower bounds (default -inf).
            ubx: Variable upper bounds (default +inf).
            lbg: Constraint lower bounds (default -inf).
            ubg: Constraint upper bounds (default +inf).
            lam_x0: Initial bound multipliers (default 0).
            lam_g0: Initial constraint multipliers (default 0).

        Returns:
            Initial SQPState with all fields populated.
        """
        nx, ng = problem.nx, problem.ng
        if p is None:
            p = jnp.zeros((0,))
        xk = _as_vector(x0, nx, 0.0, "x0")
        bounds = NLPBounds(
            lbx=_as_vector(lbx, nx, -jnp.inf, "lbx"),
            ubx=_as_vector(ubx, nx, jnp.inf, "ubx"),
            lbg=_as_vector(lbg, ng, -jnp.inf, "lbg"),
            ubg=_as_vector(ubg, ng, jnp.inf, "ubg"),
        )
        self.check_inputs(problem, xk, bounds)

        mu = _as_vector(lam_g0, ng, 0.0, "lam_g0")
        mu_x = _as_vector(lam_x0, nx, 0.0, "lam_x0")

        jac_sp = problem.jac_sparsity()
        if ng > 0:
            gk, Jk = problem.evaluate_jac(xk, p)
        else:
            gk = jnp.zeros((0,), dtype=xk.dtype)
            Jk = jnp.zeros((0,), dtype=xk.dtype)

        fk, gf = problem.evaluate_grad(xk, p)

        # Initialize or reset the Hessian or Hessian approximation
        Bk, reg = self._hessian.initial(problem, xk, p, mu)

        gLag = compute_lagrangian_gradient(gf, jac_sp, Jk, mu, mu_x)

        return SQPState(
            iteration=0,
            p=p,
            bounds=bounds,
            xk=xk,
            x_old=xk,
            fk=fk,
            gk=gk,
            gf=gf,
            Jk=Jk,
            Bk=Bk,
            mu=mu,
            mu_x=mu_x,
            gLag=gLag,
            gLag_old=gLag,
            dx=jnp.zeros_like(xk),
            qp_dual_x=jnp.zeros_like(xk),
            qp_dual_a=jnp.zeros_like(gk),
            sigma=0.0,
            merit_memory=merit_memory_init(self.merit_memory),
            reg=reg,
            step_size=0.0,
            ls_trials=0,
            ls_success=True,
            total_ls_trials=0,
        )

    def measures(self, state: SQPState) -> IterationMeasures:
        """Primal infeasibility, dual infeasibility and step norm of ``state``."""
        b = state.bounds
        return compute_measures(
            state.xk, b.lbx, b.ubx, state.gk, b.lbg, b.ubg, state.gLag, state.dx,
            norm=self.norm,
        )

    def terminate(
        self, state: SQPState, measures: Optional[IterationMeasures] = None
    ) -> tuple[bool, Optional[str]]:
        """Check the stopping tests, in order: convergence, iteration limit,
        vanishing step.

        Returns:
            Tuple of (done, return_status); the status is None while running.
        """
        if measures is None:
            measures = self.measures(state)
        status = check_termination(
            state.iteration,
            measures,
            min_iter=self.min_iter,
            max_iter=self.max_iter,
            tol_pr=self.tol_pr,
            tol_du=self.tol_du,
            min_step_size=self.min_step_size,
        )
        return status is not None, status

    def step(self, problem: AbstractNLP, state: SQPState) -> SQPState:
        """Perform one SQP iteration.

        This method:
        1. Solves the QP subproblem linearized at xk.
        2. Warns if the step reveals negative curvature of Bk.
        3. Updates the merit penalty and runs the line search (or takes the
           full step when the line search is disabled).
        4. Updates the multipliers and the primal iterate.
        5. Re-evaluates gradient and Jacobian, and updates Bk.

        Args:
            problem: The nonlinear program.
            state: Current iterate record.

        Returns:
            The iterate record after the step.
        """
        iteration = state.iteration + 1
        b = state.bounds
        p = state.p
        xk = state.xk
        jac_sp = problem.jac_sparsity()
        hess_sp = self._hessian.sparsity(problem)

        # Formulate and solve the QP
        _log.debug("Formulating QP")
        with _timed(problem, "qpsol"):
            qp = self._qp_solver.solve(
                hess_sp,
                state.Bk,
                state.gf,
                b.lbx - xk,
                b.ubx - xk,
                jac_sp,
                state.Jk,
                b.lbg - state.gk,
                b.ubg - state.gk,
                x0=state.dx,
            )
        if not qp.success:
            # The step is used regardless
            _log.debug("QP solver did not converge after %d iterations", qp.iterations)
        dx = qp.x

        # Detecting indefiniteness
        if float(hess_sp.bilin(state.Bk, dx, dx)) < 0:
            _log.warning("Indefinite Hessian detected")

        sigma = update_penalty_parameter(state.sigma, qp.lam_x, qp.lam_a)

        memory = state.merit_memory
        if self.max_iter_ls > 0:
            l1_infeas = float(l1_infeasibility(xk, b.lbx, b.ubx, state.gk, b.lbg, b.ubg))
            L1dir = float(jnp.dot(dx, state.gf)) - sigma * l1_infeas
            memory = merit_memory_push(
                memory, compute_merit(state.fk, l1_infeas, sigma)
            )
            ls = backtracking_line_search(
                problem,
                p,
                xk,
                dx,
                b.lbx,
                b.ubx,
                b.lbg,
                b.ubg,
                sigma,
                memory,
                L1dir,
                c1=self.c1,
                beta=self.beta,
                max_iter=self.max_iter_ls,
            )
            t = ls.t
            mu = (1.0 - t) * state.mu + t * qp.lam_a
            mu_x = (1.0 - t) * state.mu_x + t * qp.lam_x
            x_new = ls.x
            ls_trials, ls_success = ls.n_trials, ls.success
        else:
            # Full step
            t = 1.0
            mu = qp.lam_a
            mu_x = qp.lam_x
            x_new = xk + dx
            ls_trials, ls_success = 0, True

        if self._hessian.needs_old_gradient:
            # Old x, new multipliers
            gLag_old = compute_lagrangian_gradient(state.gf, jac_sp, state.Jk, mu, mu_x)
        else:
            gLag_old = state.gLag_old

        if problem.ng > 0:
            gk, Jk = problem.evaluate_jac(x_new, p)
        else:
            gk, Jk = state.gk, state.Jk
        fk, gf = problem.evaluate_grad(x_new, p)
        gLag = compute_lagrangian_gradient(gf, jac_sp, Jk, mu, mu_x)

        Bk, reg = self._hessian.update(
            problem, iteration, state.Bk, x_new, xk, p, mu, gLag, gLag_old
        )

        return SQPState(
            iteration=iteration,
            p=p,
            bounds=b,
            xk=x_new,
            x_old=xk,
            fk=fk,
            gk=gk,
            gf=gf,
            Jk=Jk,
            Bk=Bk,
            mu=mu,
            mu_x=mu_x,
            gLag=gLag,
            gLag_old=gLag_old,
            dx=dx,
            qp_dual_x=qp.lam_x,
            qp_dual_a=qp.lam_a,
            sigma=sigma,
            merit_memory=memory,
            reg=reg,
            step_size=t,
            ls_trials=ls_trials,
            ls_success=ls_success,
            total_ls_trials=state.total_ls_trials + ls_trials,
        )

    def reset(self, problem: AbstractNLP, state: SQPState) -> SQPState:
        """Restart the Hessian approximation and clear the merit window.

        The iterate, multipliers and penalty parameter are kept.
        """
        Bk, reg = self._hessian.initial(problem, state.xk, state.p, state.mu)
        return eqx.tree_at(
            lambda s: (s.Bk, s.reg, s.merit_memory),
            state,
            (Bk, reg, merit_memory_init(self.merit_memory)),
        )

    def postprocess(
        self,
        state: SQPState,
        return_status: str,
        stats: Optional[FunctionStats] = None,
    ) -> SQPResult:
        """Copy the final iterate into an :class:`SQPResult`."""
        summary = {
            "return_status": return_status,
            "iter_count": state.iteration,
            "sigma": state.sigma,
            "reg": state.reg,
            "ls_trials": state.total_ls_trials,
        }
        if stats is not None:
            summary.update(stats.as_dict(_TIMED_FUNCTIONS))
        return SQPResult(
            f=state.fk,
            x=state.xk,
            lam_g=state.mu,
            lam_x=state.mu_x,
            g=state.gk,
            return_status=return_status,
            iter_count=state.iteration,
            stats=summary,
        )

    def _call_callback(self, state: SQPState, stats: FunctionStats) -> bool:
        """Run the iteration callback; True requests a stop."""
        with stats.timed("callback_fun"):
            try:
                ret = self.iteration_callback(
                    state.fk, state.xk, state.mu, state.mu_x, state.gk
                )
            except Exception as e:
                _log.warning("intermediate_callback error: %s", e)
                ret = 0 if self.iteration_callback_ignore_errors else 1
        return ret is not None and int(ret) != 0

    def solve(
        self,
        problem: AbstractNLP,
        x0,
        p: Any = None,
        lbx=None,
        ubx=None,
        lbg=None,
        ubg=None,
        lam_x0=None,
        lam_g0=None,
    ) -> SQPResult:
        """Run the SQP method from ``x0`` until a stopping test fires.

        Only function evaluation failures at the current linearization
        point (:class:`~sqpmethod_jax.problem.FunctionEvaluationError`) and
        input errors (``ValueError``) propagate; every other outcome is
        reported through ``return_status``.

        Returns:
            SQPResult with the final iterate, multipliers and statistics.
        """
        stats = FunctionStats()
        nlp = InstrumentedNLP(nlp=problem, stats=stats)

        state = self.init(nlp, x0, p, lbx, ubx, lbg, ubg, lam_x0, lam_g0)

        if self.print_header:
            display.print_header(
                self.exact_hessian,
                problem.nx,
                problem.ng,
                problem.jac_sparsity().nnz,
                self._hessian.sparsity(problem).nnz,
            )

        while True:
            measures = self.measures(state)

            if self.print_iteration:
                display.print_iteration(
                    state.iteration,
                    float(state.fk),
                    measures.pr_inf,
                    measures.du_inf,
                    measures.dx_norm,
                    state.reg,
                    state.ls_trials,
                    state.ls_success,
                )

            if (
                self.iteration_callback is not None
                and state.iteration % self.iteration_callback_step == 0
                and self._call_callback(state, stats)
            ):
                _log.warning("Aborted by callback...")
                return_status = ReturnStatus.USER_STOP
                break

            done, return_status = self.terminate(state, measures)
            if done:
                if return_status == ReturnStatus.SUCCESS:
                    _log.info("Convergence achieved after %d iterations", state.iteration)
                elif return_status == ReturnStatus.MAX_ITERATIONS:
                    _log.info("Maximum number of iterations reached.")
                else:
                    _log.info(
                        "Search direction becomes too small without "
                        "convergence criteria being met."
                    )
                break

            state = self.step(nlp, state)

        return self.postprocess(state, return_status, stats)
