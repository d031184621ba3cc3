"""QP subproblem solvers for the SQP method.

Every SQP iteration solves the QP

    minimize    (1/2) d^T H d + g^T d
    subject to  lbx <= d <= ubx
                lbA <= A d <= ubA

through a pluggable solver selected by name (the ``qpsol`` option).
All plugins share one contract::

    solve(H, g, lbx, ubx, A, lbA, ubA, x0) -> QPSolution(x, lam_x, lam_a, ...)

where ``H`` and ``A`` are given as a :class:`~sqpmethod_jax.sparsity.Sparsity`
plus nonzeros, and the duals satisfy

    H x + g + A^T lam_a + lam_x = 0

so a negative dual marks an active lower bound and a positive dual an
active upper bound.

The bundled ``active_set`` plugin is a primal **active-set** method.
Internally it works with one-sided rows A_eq d = b_eq, A_ineq d >= b_ineq
and the Lagrangian

    L(d, lambda) = (1/2) d^T H d + g^T d - lambda^T (A d - b)

with lambda >= 0 for inequality rows. To start from a feasible point the
rows are relaxed by one **elastic** variable t >= 0,

    minimize    (1/2) d^T H d + g^T d + M t
    subject to  |A_eq d - b_eq| <= t,  A_ineq d + t >= b_ineq,

which is feasible at d = 0 for a large enough t. The penalty M is raised
while the solution keeps t > 0, so t = 0 at the solution of any feasible
QP. Each iteration moves in the null space of the working rows, where H
is diagonalized directly; the working set only grows by blocking rows, so
it stays linearly independent.
"""

import abc
import logging
from typing import Any, NamedTuple, Optional

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np
from beartype import beartype
from jaxtyping import Array, Bool, Float, Int, jaxtyped

from sqpmethod_jax.sparsity import Sparsity

_log = logging.getLogger(__name__)

# Penalty growth per update and number of updates of the elastic variable
_PENALTY_FACTOR = 1e3
_MAX_PENALTY_UPDATES = 3


class QPSolution(NamedTuple):
    """Result from a QP solver plugin.

    Attributes:
        x: Primal solution (the SQP step).
        lam_x: Duals of the variable bounds.
        lam_a: Duals of the linear constraint rows.
        success: Whether the plugin reports convergence.
        iterations: Number of plugin iterations.
    """

    x: Float[Array, " n"]
    lam_x: Float[Array, " n"]
    lam_a: Float[Array, " m"]
    success: bool
    iterations: int


class _ActiveSetState(eqx.Module):
    z: Float[Array, " n1"]
    working: Bool[Array, " m"]
    penalty: Float[Array, ""]
    at_minimizer: Bool[Array, ""]
    iteration: Int[Array, ""]
    done: Bool[Array, ""]
    converged: Bool[Array, ""]


def _null_space_eigh(
    H: Float[Array, "n n"], C: Float[Array, "m n"], working: Bool[Array, " m"]
) -> tuple[Float[Array, "n n"], Float[Array, " n"], Bool[Array, " n"]]:
    """Diagonalize H on the null space of the working rows of C.

    Returns:
        Tuple of (Y, curvature, free). The columns of Y flagged by ``free``
        are an orthonormal basis of the null space, and H restricted to it
        is diagonal in that basis with the given curvatures.
    """
    n = H.shape[0]
    C_w = jnp.where(working[:, None], C, 0.0)
    _, s, Vt = jnp.linalg.svd(C_w, full_matrices=True)
    sv = jnp.zeros(n, dtype=H.dtype).at[: s.shape[0]].set(s)
    null = sv <= 1e-10 * s[0]
    V = Vt.T

    Hr = V.T @ H @ V
    Hr = jnp.where(null[:, None] & null[None, :], 0.5 * (Hr + Hr.T), 0.0)
    # Null-space eigenvalues lie in [-bound, bound]; the range block is
    # shifted past them so eigh cannot mix the two
    bound = 1.0 + jnp.linalg.norm(Hr)
    curvature, Q = jnp.linalg.eigh(Hr + jnp.diag(jnp.where(null, 0.0, 2.0 * bound)))
    return V @ Q, curvature, curvature < 1.5 * bound


def _working_multipliers(
    C: Float[Array, "m n"], working: Bool[Array, " m"], grad: Float[Array, " n"]
) -> Float[Array, " m"]:
    """Multipliers of the working rows from C_w^T lambda = grad; zero elsewhere."""
    C_w = jnp.where(working[:, None], C, 0.0)
    lam = jnp.linalg.lstsq(C_w.T, grad)[0]
    return jnp.where(working, lam, 0.0)


@eqx.filter_jit
def _solve_active_set(
    H: Float[Array, "n n"],
    g: Float[Array, " n"],
    A_eq: Float[Array, "m_eq n"],
    b_eq: Float[Array, " m_eq"],
    A_ineq: Float[Array, "m_ineq n"],
    b_ineq: Float[Array, " m_ineq"],
    max_iter: int,
    tol: float,
):
    """Primal active-set loop on the elastic problem in z = (d, t).

    Each pass takes one of these moves, in order of priority:

    1. Descend along a zero-curvature direction with a nonzero gradient
       until a row blocks it.
    2. Take the Newton step on the positive-curvature part of the null
       space, shortened to the first blocking row.
    3. Follow a direction of negative curvature until a row blocks it.
    4. At a minimizer for the working set: drop the row with the most
       negative multiplier, raise the penalty while t > 0, or stop.

    An unblocked move along a direction of type 1 or 3 means the QP is
    unbounded; the loop then stops at the current point without success.
    """
    n = g.shape[0]
    m_eq = A_eq.shape[0]
    dtype = g.dtype

    # Rows C z >= c with the elastic bound t >= 0 first, so that it wins
    # ties in the ratio test
    rows = jnp.concatenate([A_eq, -A_eq, A_ineq], axis=0).astype(dtype)
    t_row = jnp.zeros((1, n + 1), dtype=dtype).at[0, n].set(1.0)
    C = jnp.concatenate(
        [t_row, jnp.concatenate([rows, jnp.ones((rows.shape[0], 1), dtype=dtype)], axis=1)],
        axis=0,
    )
    c = jnp.concatenate([jnp.zeros(1, dtype=dtype), b_eq, -b_eq, b_ineq]).astype(dtype)
    H1 = jnp.zeros((n + 1, n + 1), dtype=dtype).at[:n, :n].set(H)
    row_norms = jnp.linalg.norm(C, axis=1)

    h_max = jnp.max(jnp.abs(H))
    c_max = jnp.max(jnp.abs(c))
    scale = 1.0 + jnp.max(jnp.abs(g)) + h_max
    penalty0 = 1e3 * (scale + h_max * c_max)
    max_penalty = penalty0 * _PENALTY_FACTOR**_MAX_PENALTY_UPDATES
    t_tol = 1e-9 * (1.0 + c_max)

    init = _ActiveSetState(
        z=jnp.zeros(n + 1, dtype=dtype).at[n].set(jnp.max(c)),
        working=jnp.zeros(C.shape[0], dtype=bool),
        penalty=jnp.asarray(penalty0, dtype=dtype),
        at_minimizer=jnp.array(False),
        iteration=jnp.array(0),
        done=jnp.array(False),
        converged=jnp.array(False),
    )

    def cond_fn(state):
        return ~state.done & (state.iteration < max_iter)

    def body_fn(state):
        z, working = state.z, state.working
        grad = H1 @ z + jnp.concatenate([g, state.penalty[None]])

        Y, curvature, free = _null_space_eigh(H1, C, working)
        comp = jnp.where(free, Y.T @ grad, 0.0)
        curv_tol = 1e-12 * jnp.maximum(
            jnp.max(jnp.where(free, jnp.abs(curvature), 0.0)), h_max
        )
        positive = free & (curvature > curv_tol)
        negative = free & (curvature < -curv_tol)
        flat = free & ~positive & ~negative

        p_linear = -Y @ jnp.where(flat, comp, 0.0)
        p_newton = -Y @ jnp.where(positive, comp / jnp.where(positive, curvature, 1.0), 0.0)
        k = jnp.argmin(jnp.where(negative, curvature, jnp.inf))
        p_curv = jnp.where(jnp.dot(Y[:, k], grad) > 0, -Y[:, k], Y[:, k])

        use_linear = jnp.any(flat & (jnp.abs(comp) > 1e-9 * scale))
        use_newton = (
            ~use_linear
            & ~state.at_minimizer
            & (jnp.linalg.norm(p_newton) > 1e-14 * (1.0 + jnp.linalg.norm(z)))
        )
        use_curv = ~use_linear & ~use_newton & jnp.any(negative)
        moving = use_linear | use_newton | use_curv
        p = jnp.where(use_linear, p_linear, jnp.where(use_newton, p_newton, p_curv))

        # Ratio test over the rows outside the working set
        Cp = C @ p
        slack = jnp.maximum(C @ z - c, 0.0)
        blocking = ~working & (Cp < -1e-12 * row_norms * jnp.linalg.norm(p))
        ratios = jnp.where(blocking, slack / jnp.where(blocking, -Cp, 1.0), jnp.inf)
        j = jnp.argmin(ratios)
        alpha_max = jnp.where(use_newton, 1.0, jnp.inf)
        blocked = jnp.isfinite(ratios[j]) & (ratios[j] <= alpha_max)
        alpha = jnp.minimum(ratios[j], alpha_max)
        unbounded = moving & ~jnp.isfinite(alpha)
        z_moved = z + jnp.where(unbounded, 0.0, alpha) * p

        # Optimality test on the working set
        lam = _working_multipliers(C, working, grad)
        drop = jnp.argmin(jnp.where(working, lam, jnp.inf))
        can_drop = working[drop] & (lam[drop] < -tol * scale)
        infeasible = z[n] > t_tol
        raise_penalty = ~can_drop & infeasible & (state.penalty < max_penalty)
        finished = ~moving & ~can_drop & ~raise_penalty

        working_moved = working.at[j].set(working[j] | blocked)
        working_dropped = working.at[drop].set(working[drop] & ~can_drop)
        return _ActiveSetState(
            z=jnp.where(moving, z_moved, z),
            working=jnp.where(moving, working_moved, working_dropped),
            penalty=jnp.where(
                ~moving & raise_penalty, state.penalty * _PENALTY_FACTOR, state.penalty
            ),
            at_minimizer=use_newton & ~blocked,
            iteration=state.iteration + 1,
            done=unbounded | finished,
            converged=finished & ~infeasible,
        )

    final = jax.lax.while_loop(cond_fn, body_fn, init)
    grad = H1 @ final.z + jnp.concatenate([g, final.penalty[None]])
    lam = _working_multipliers(C, final.working, grad)
    mult_eq = lam[1 : 1 + m_eq] - lam[1 + m_eq : 1 + 2 * m_eq]
    mult_ineq = lam[1 + 2 * m_eq :]
    return final.z[:n], mult_eq, mult_ineq, final.converged, final.iteration


class AbstractQPSolver(eqx.Module):
    """Interface of a QP solver plugin."""

    @abc.abstractmethod
    def solve(
        self,
        H_sp: Sparsity,
        H: Float[Array, " nnz_h"],
        g: Float[Array, " n"],
        lbx: Float[Array, " n"],
        ubx: Float[Array, " n"],
        A_sp: Sparsity,
        A: Float[Array, " nnz_a"],
        lba: Float[Array, " m"],
        uba: Float[Array, " m"],
        x0: Optional[Float[Array, " n"]] = None,
    ) -> QPSolution:
        """Solve the QP and return the primal step and duals."""


class ActiveSetQPSolver(AbstractQPSolver):
    """Primal active-set QP solver on an elastic reformulation.

    Only finite bounds generate constraint rows; a row whose lower and
    upper bounds coincide becomes an equality. The warm start ``x0`` is
    accepted for contract compatibility; every solve starts from d = 0.
    A nonconvex QP is solved to a local minimizer when the rows bound it;
    an unbounded QP returns the last iterate with ``success=False``.

    Attributes:
        max_iter: Maximum active-set iterations.
        tol: Multiplier-sign tolerance, relative to the scale of H and g.
    """

    max_iter: int = eqx.field(static=True, default=200)
    tol: float = 1e-10

    def __check_init__(self):
        if self.max_iter < 1:
            raise ValueError("max_iter must be positive")
        if not self.tol > 0:
            raise ValueError("tol must be positive")

    @jaxtyped(typechecker=beartype)
    def solve(
        self,
        H_sp: Sparsity,
        H: Float[Array, " nnz_h"],
        g: Float[Array, " n"],
        lbx: Float[Array, " n"],
        ubx: Float[Array, " n"],
        A_sp: Sparsity,
        A: Float[Array, " nnz_a"],
        lba: Float[Array, " m"],
        uba: Float[Array, " m"],
        x0: Optional[Float[Array, " n"]] = None,
    ) -> QPSolution:
        n = g.shape[0]
        m = lba.shape[0]
        H_dense = H_sp.to_dense(H)
        A_dense = A_sp.to_dense(A)

        # Row selection happens on the host; it fixes the shapes seen by jit
        rows = _ConstraintRows.build(
            np.asarray(lbx), np.asarray(ubx), np.asarray(lba), np.asarray(uba)
        )
        eye = jnp.eye(n, dtype=g.dtype)
        A_eq = jnp.concatenate([eye[rows.eq_x], A_dense[rows.eq_a]], axis=0)
        b_eq = jnp.concatenate([lbx[rows.eq_x], lba[rows.eq_a]])
        A_ineq = jnp.concatenate(
            [
                eye[rows.lo_x],
                A_dense[rows.lo_a],
                -eye[rows.up_x],
                -A_dense[rows.up_a],
            ],
            axis=0,
        )
        b_ineq = jnp.concatenate(
            [lbx[rows.lo_x], lba[rows.lo_a], -ubx[rows.up_x], -uba[rows.up_a]]
        )

        d, mult_eq, mult_ineq, converged, iterations = _solve_active_set(
            H_dense,
            g,
            A_eq,
            b_eq,
            A_ineq,
            b_ineq,
            self.max_iter,
            self.tol,
        )
        if not converged:
            _log.debug(
                "active_set stopped without a solution after %d iterations",
                int(iterations),
            )
        lam_x, lam_a = rows.scatter_duals(n, m, mult_eq, mult_ineq, g.dtype)
        return QPSolution(
            x=d,
            lam_x=lam_x,
            lam_a=lam_a,
            success=bool(converged),
            iterations=int(iterations),
        )


class _ConstraintRows(NamedTuple):
    """Indices of the one-sided rows generated from two-sided bounds."""

    eq_x: np.ndarray
    eq_a: np.ndarray
    lo_x: np.ndarray
    lo_a: np.ndarray
    up_x: np.ndarray
    up_a: np.ndarray

    @classmethod
    def build(cls, lbx, ubx, lba, uba) -> "_ConstraintRows":
        def split(lb, ub):
            eq = np.isfinite(lb) & (lb == ub)
            lo = np.isfinite(lb) & ~eq
            up = np.isfinite(ub) & ~eq
            return np.flatnonzero(eq), np.flatnonzero(lo), np.flatnonzero(up)

        eq_x, lo_x, up_x = split(lbx, ubx)
        eq_a, lo_a, up_a = split(lba, uba)
        return cls(eq_x=eq_x, eq_a=eq_a, lo_x=lo_x, lo_a=lo_a, up_x=up_x, up_a=up_a)

    def scatter_duals(self, n, m, mult_eq, mult_ineq, dtype):
        """Map one-sided multipliers back to signed bound duals.

        Equality and lower-bound rows enter the stationarity condition with
        a negative sign, upper-bound rows (stored negated) with a positive one.
        """
        n_eq_x = self.eq_x.size
        n_lo = self.lo_x.size + self.lo_a.size
        lo_x_end = self.lo_x.size
        up_x_end = n_lo + self.up_x.size

        x_idx = np.concatenate([self.eq_x, self.lo_x, self.up_x])
        x_val = jnp.concatenate(
            [
                -mult_eq[:n_eq_x],
                -mult_ineq[:lo_x_end],
                mult_ineq[n_lo:up_x_end],
            ]
        )
        a_idx = np.concatenate([self.eq_a, self.lo_a, self.up_a])
        a_val = jnp.concatenate(
            [
                -mult_eq[n_eq_x:],
                -mult_ineq[lo_x_end:n_lo],
                mult_ineq[up_x_end:],
            ]
        )
        lam_x = jnp.zeros(n, dtype=dtype).at[x_idx].add(x_val.astype(dtype))
        lam_a = jnp.zeros(m, dtype=dtype).at[a_idx].add(a_val.astype(dtype))
        return lam_x, lam_a


_QPSOL_PLUGINS: dict[str, type[AbstractQPSolver]] = {
    "active_set": ActiveSetQPSolver,
}


def register_qpsol(name: str, cls: type[AbstractQPSolver]) -> None:
    """Make a QP solver plugin selectable through the ``qpsol`` option."""
    if not issubclass(cls, AbstractQPSolver):
        raise TypeError(f"{cls!r} is not an AbstractQPSolver")
    _QPSOL_PLUGINS[name] = cls


def available_qpsols() -> tuple[str, ...]:
    return tuple(sorted(_QPSOL_PLUGINS))


def get_qpsol(name: Optional[str], options: Optional[dict[str, Any]] = None) -> AbstractQPSolver:
    """Instantiate the QP solver plugin ``name`` with ``options``."""
    if not name:
        raise ValueError("'qpsol' option has not been set")
    if name not in _QPSOL_PLUGINS:
        raise ValueError(
            f"Unknown qpsol {name!r}; available plugins: {', '.join(available_qpsols())}"
        )
    try:
        return _QPSOL_PLUGINS[name](**(options or {}))
    except TypeError as e:
        raise ValueError(f"Invalid qpsol_options for {name!r}: {e}") from e
