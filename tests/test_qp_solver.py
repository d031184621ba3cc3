"""Unit tests for the QP subproblem solver.

These tests verify that the active-set QP solver returns the minimizer of

    (1/2) x^T H x + g^T x  s.t.  lbx <= x <= ubx,  lba <= A x <= uba

together with duals satisfying H x + g + A^T lam_a + lam_x = 0, with
negative duals on active lower bounds and positive duals on active
upper bounds.
"""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from sqpmethod_jax import qp_solver
from sqpmethod_jax.qp_solver import (
    AbstractQPSolver,
    ActiveSetQPSolver,
    QPSolution,
    available_qpsols,
    get_qpsol,
    register_qpsol,
)
from sqpmethod_jax.sparsity import Sparsity

# Enable 64-bit precision for numerical accuracy
jax.config.update("jax_enable_x64", True)

INF = jnp.inf


def _solve(H, g, A=None, lbx=None, ubx=None, lba=None, uba=None, solver=None):
    """Solve a QP given as dense matrices."""
    n = g.shape[0]
    if A is None:
        A = jnp.zeros((0, n))
    m = A.shape[0]
    lbx = jnp.full(n, -INF) if lbx is None else jnp.asarray(lbx)
    ubx = jnp.full(n, INF) if ubx is None else jnp.asarray(ubx)
    lba = jnp.full(m, -INF) if lba is None else jnp.asarray(lba)
    uba = jnp.full(m, INF) if uba is None else jnp.asarray(uba)
    H_sp = Sparsity.dense(n, n)
    A_sp = Sparsity.dense(m, n)
    solver = solver or ActiveSetQPSolver()
    return solver.solve(
        H_sp, H_sp.get_nz(H), g, lbx, ubx, A_sp, A_sp.get_nz(A), lba, uba
    )


def _assert_kkt(sol, H, g, A):
    residual = H @ sol.x + g + A.T @ sol.lam_a + sol.lam_x
    np.testing.assert_allclose(residual, 0.0, atol=1e-8)


def _assert_optimal(sol, H, g, A, lbx, ubx, lba, uba, tol=1e-7):
    """Check feasibility, stationarity, dual signs and complementarity."""
    x = np.asarray(sol.x)
    lam_x = np.asarray(sol.lam_x)
    lam_a = np.asarray(sol.lam_a)
    Ax = A @ x

    assert np.all(x >= lbx - tol) and np.all(x <= ubx + tol)
    assert np.all(Ax >= lba - tol) and np.all(Ax <= uba + tol)
    np.testing.assert_allclose(H @ x + g + A.T @ lam_a + lam_x, 0.0, atol=tol)

    # A negative dual needs an active lower bound, a positive one an active upper bound
    for value, lam, lb, ub in ((x, lam_x, lbx, ubx), (Ax, lam_a, lba, uba)):
        lower = lam < -tol
        upper = lam > tol
        np.testing.assert_allclose(value[lower], lb[lower], atol=tol)
        np.testing.assert_allclose(value[upper], ub[upper], atol=tol)


class TestUnconstrained:
    def test_unconstrained_qp(self):
        """Solution: x = -H^{-1} g."""
        H = jnp.array([[2.0, 0.0], [0.0, 4.0]])
        g = jnp.array([2.0, 4.0])

        sol = _solve(H, g)

        assert sol.success
        np.testing.assert_allclose(sol.x, -jnp.linalg.solve(H, g), rtol=1e-10)
        np.testing.assert_allclose(sol.lam_x, 0.0)
        assert sol.lam_a.shape == (0,)

    def test_sparse_hessian(self):
        """The same QP with a diagonal Hessian pattern."""
        sp = Sparsity.diag(2)
        g = jnp.array([2.0, 4.0])
        A_sp = Sparsity.dense(0, 2)
        sol = ActiveSetQPSolver().solve(
            sp,
            jnp.array([2.0, 4.0]),
            g,
            jnp.full(2, -INF),
            jnp.full(2, INF),
            A_sp,
            jnp.zeros(0),
            jnp.zeros(0),
            jnp.zeros(0),
        )
        np.testing.assert_allclose(sol.x, [-1.0, -1.0], rtol=1e-10)

    def test_small_gradient_ill_conditioned(self):
        """A tiny gradient still gives the exact Newton step."""
        H = jnp.array([[802.0, -400.0], [-400.0, 200.0]])
        g = 1e-6 * jnp.array([-0.447, -0.894])

        sol = _solve(H, g)

        assert sol.success
        np.testing.assert_allclose(sol.x, -jnp.linalg.solve(H, g), rtol=1e-8)
        assert float(jnp.linalg.norm(sol.x)) > 1e-6


class TestConstrained:
    def test_equality_row(self):
        """minimize (1/2)(x^2 + y^2)  s.t.  x + y = 1.

        Solution: x = y = 0.5, with dual -0.5 on the row.
        """
        H = jnp.eye(2)
        g = jnp.zeros(2)
        A = jnp.array([[1.0, 1.0]])

        sol = _solve(H, g, A, lba=[1.0], uba=[1.0])

        np.testing.assert_allclose(sol.x, [0.5, 0.5], rtol=1e-8)
        np.testing.assert_allclose(sol.lam_a, [-0.5], rtol=1e-8)
        _assert_kkt(sol, H, g, A)

    def test_active_lower_bound(self):
        """minimize (1/2) x^2 + x  s.t.  x >= 0 gives a negative bound dual."""
        H = jnp.eye(2)
        g = jnp.array([1.0, 0.0])

        sol = _solve(H, g, lbx=[0.0, -INF])

        assert sol.success
        np.testing.assert_allclose(sol.x, [0.0, 0.0], atol=1e-10)
        np.testing.assert_allclose(sol.lam_x, [-1.0, 0.0], atol=1e-8)
        _assert_kkt(sol, H, g, jnp.zeros((0, 2)))

    def test_active_upper_bound(self):
        """minimize (1/2) x^2 - x  s.t.  x <= 0.5 gives a positive bound dual."""
        H = jnp.eye(2)
        g = jnp.array([-1.0, 0.0])

        sol = _solve(H, g, ubx=[0.5, INF])

        np.testing.assert_allclose(sol.x, [0.5, 0.0], atol=1e-10)
        np.testing.assert_allclose(sol.lam_x, [0.5, 0.0], atol=1e-8)

    def test_active_upper_row(self):
        """minimize (1/2)(x^2 + y^2)  s.t.  x + y <= -1."""
        H = jnp.eye(2)
        g = jnp.zeros(2)
        A = jnp.array([[1.0, 1.0]])

        sol = _solve(H, g, A, uba=[-1.0])

        np.testing.assert_allclose(sol.x, [-0.5, -0.5], rtol=1e-8)
        np.testing.assert_allclose(sol.lam_a, [0.5], rtol=1e-8)
        _assert_kkt(sol, H, g, A)

    def test_inactive_constraints(self):
        """Bounds that do not bind leave the unconstrained solution and zero duals."""
        H = 2.0 * jnp.eye(2)
        g = jnp.array([-2.0, 2.0])
        A = jnp.array([[1.0, -1.0]])

        sol = _solve(H, g, A, lbx=[-5.0, -5.0], ubx=[5.0, 5.0], lba=[-10.0], uba=[10.0])

        np.testing.assert_allclose(sol.x, [1.0, -1.0], rtol=1e-8)
        np.testing.assert_allclose(sol.lam_x, 0.0, atol=1e-10)
        np.testing.assert_allclose(sol.lam_a, 0.0, atol=1e-10)

    def test_mixed_bounds_and_rows(self):
        """minimize (1/2)||x - c||^2  s.t.  x0 + x1 + x2 = 1, 0 <= x <= 1."""
        c = jnp.array([2.0, 0.0, -1.0])
        H = jnp.eye(3)
        g = -c
        A = jnp.ones((1, 3))

        sol = _solve(H, g, A, lbx=jnp.zeros(3), ubx=jnp.ones(3), lba=[1.0], uba=[1.0])

        np.testing.assert_allclose(sol.x, [1.0, 0.0, 0.0], atol=1e-8)
        _assert_kkt(sol, H, g, A)
        # x2 sits on its lower bound
        assert float(sol.lam_x[2]) < 0.0

    def test_more_violated_rows_than_variables(self):
        """The unconstrained minimizer (3, 3) violates five rows in two variables.

        Only 2x + y <= 2.2 and x + 2y <= 2.2 are active at the solution
        x = y = 2.2 / 3, both with dual 6.8 / 9.
        """
        H = np.eye(2)
        g = np.array([-3.0, -3.0])
        A = np.array([[1.0, 1.0], [2.0, 1.0], [1.0, 2.0]])
        lbx, ubx = np.zeros(2), np.ones(2)
        lba, uba = np.full(3, -np.inf), np.array([1.5, 2.2, 2.2])

        sol = _solve(
            jnp.asarray(H), jnp.asarray(g), jnp.asarray(A), lbx, ubx, lba, uba
        )

        assert sol.success
        np.testing.assert_allclose(sol.x, [2.2 / 3, 2.2 / 3], atol=1e-10)
        np.testing.assert_allclose(sol.lam_a, [0.0, 6.8 / 9, 6.8 / 9], atol=1e-10)
        np.testing.assert_allclose(sol.lam_x, 0.0, atol=1e-10)
        _assert_optimal(sol, H, g, A, lbx, ubx, lba, uba)

    @pytest.mark.parametrize("seed", range(20))
    def test_random_feasible_qps(self, seed):
        """Random strictly convex QPs with x = 0 feasible satisfy the KKT conditions."""
        rng = np.random.default_rng(seed)
        n = int(rng.integers(2, 6))
        m = 2 * n
        B = rng.standard_normal((n, n))
        H = B @ B.T + 0.1 * np.eye(n)
        g = 3.0 * rng.standard_normal(n)
        A = rng.standard_normal((m, n))
        lbx = -rng.uniform(0.1, 1.0, n)
        ubx = rng.uniform(0.1, 1.0, n)
        lba = np.where(rng.random(m) < 0.3, -np.inf, -rng.uniform(0.1, 1.0, m))
        uba = np.where(rng.random(m) < 0.3, np.inf, rng.uniform(0.1, 1.0, m))

        sol = _solve(
            jnp.asarray(H), jnp.asarray(g), jnp.asarray(A), lbx, ubx, lba, uba
        )

        assert sol.success
        _assert_optimal(sol, H, g, A, lbx, ubx, lba, uba)


class TestFailures:
    """QPs without a solution are reported through ``success``."""

    def test_infeasible(self):
        """x >= 1 through a row and x <= 0 through a bound."""
        sol = _solve(
            jnp.eye(1), jnp.zeros(1), jnp.ones((1, 1)), ubx=[0.0], lba=[1.0]
        )

        assert not sol.success
        # The step splits the violation between the two rows
        np.testing.assert_allclose(sol.x, [0.5], atol=1e-10)

    def test_unbounded_nonconvex(self):
        sol = _solve(-jnp.eye(2), jnp.array([1.0, 0.0]))

        assert not sol.success
        assert np.all(np.isfinite(sol.x))


class TestPluginRegistry:
    """Tests for selecting QP solvers by name."""

    def test_default_plugin(self):
        assert "active_set" in available_qpsols()
        solver = get_qpsol("active_set", {"max_iter": 20})
        assert isinstance(solver, ActiveSetQPSolver)
        assert solver.max_iter == 20

    def test_missing_name(self):
        with pytest.raises(ValueError, match="has not been set"):
            get_qpsol("")

    def test_unknown_name(self):
        with pytest.raises(ValueError, match="Unknown qpsol"):
            get_qpsol("qpoases")

    def test_unknown_option(self):
        with pytest.raises(ValueError, match="Invalid qpsol_options"):
            get_qpsol("active_set", {"printLevel": "none"})

    def test_invalid_option_value(self):
        with pytest.raises(ValueError):
            get_qpsol("active_set", {"tol": -1.0})

    def test_register_plugin(self, monkeypatch):
        monkeypatch.setattr(qp_solver, "_QPSOL_PLUGINS", dict(qp_solver._QPSOL_PLUGINS))

        class ZeroStep(AbstractQPSolver):
            def solve(self, H_sp, H, g, lbx, ubx, A_sp, A, lba, uba, x0=None):
                return QPSolution(
                    x=jnp.zeros_like(g),
                    lam_x=jnp.zeros_like(g),
                    lam_a=jnp.zeros_like(lba),
                    success=True,
                    iterations=0,
                )

        register_qpsol("zero", ZeroStep)
        assert "zero" in available_qpsols()
        assert isinstance(get_qpsol("zero"), ZeroStep)

    def test_register_rejects_non_solver(self, monkeypatch):
        monkeypatch.setattr(qp_solver, "_QPSOL_PLUGINS", dict(qp_solver._QPSOL_PLUGINS))
        with pytest.raises(TypeError):
            register_qpsol("bad", dict)
