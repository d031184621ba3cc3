"""Unit tests for the Hessian strategies of the SQP method."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from sqpmethod_jax.hessian import (
    ExactHessian,
    LimitedMemoryHessian,
    bfgs_reset,
    bfgs_update,
    compute_lagrangian_gradient,
    gershgorin_bounds,
    gershgorin_regularization,
    make_hessian_approximation,
    regularize,
)
from sqpmethod_jax.problem import JaxNLP
from sqpmethod_jax.sparsity import Sparsity

# Enable 64-bit precision for numerical accuracy
jax.config.update("jax_enable_x64", True)


class TestLagrangianGradient:
    def test_gradient(self):
        """grad_f + J^T mu + mu_x."""
        sp = Sparsity.dense(2, 3)
        J = jnp.array([[1.0, 0.0, 2.0], [0.0, 1.0, -1.0]])
        grad_f = jnp.array([1.0, 1.0, 1.0])
        mu = jnp.array([2.0, 3.0])
        mu_x = jnp.array([0.0, -1.0, 0.5])

        glag = compute_lagrangian_gradient(grad_f, sp, sp.get_nz(J), mu, mu_x)
        np.testing.assert_allclose(glag, grad_f + J.T @ mu + mu_x)

    def test_no_constraints(self):
        sp = Sparsity.dense(0, 2)
        glag = compute_lagrangian_gradient(
            jnp.array([1.0, 2.0]), sp, jnp.zeros(0), jnp.zeros(0), jnp.array([1.0, 1.0])
        )
        np.testing.assert_allclose(glag, [2.0, 3.0])


class TestGershgorin:
    """Tests for the Gershgorin regularization of the exact Hessian."""

    def test_indefinite_matrix(self):
        """[[1, 2], [2, 1]] has disc lower bounds -1 in both columns."""
        sp = Sparsity.dense(2, 2)
        H = sp.get_nz(jnp.array([[1.0, 2.0], [2.0, 1.0]]))

        np.testing.assert_allclose(gershgorin_bounds(sp, H), [-1.0, -1.0])
        reg = gershgorin_regularization(sp, H)
        assert reg == pytest.approx(1.0)

        shifted = regularize(sp, H, reg)
        np.testing.assert_allclose(sp.to_dense(shifted), [[2.0, 2.0], [2.0, 2.0]])
        assert gershgorin_regularization(sp, shifted) == pytest.approx(0.0)

    def test_diagonally_dominant_matrix(self):
        sp = Sparsity.dense(2, 2)
        H = sp.get_nz(jnp.array([[3.0, 1.0], [1.0, 2.0]]))
        assert gershgorin_regularization(sp, H) == 0.0

    def test_sparse_pattern(self):
        """Only stored entries contribute to the discs."""
        sp = Sparsity.diag(3)
        H = jnp.array([1.0, -4.0, 2.0])
        assert gershgorin_regularization(sp, H) == pytest.approx(4.0)


class TestBFGS:
    """Tests for the damped BFGS update."""

    def test_reset(self):
        sp = Sparsity.dense(2, 2)
        B = bfgs_reset(sp, jnp.array([5.0, 1.0, 1.0, 7.0]))
        np.testing.assert_allclose(sp.to_dense(B), jnp.eye(2))

    def test_secant_condition(self):
        """Without damping, the updated matrix maps s to y."""
        sp = Sparsity.dense(2, 2)
        B = bfgs_reset(sp, jnp.zeros(4))
        x_old = jnp.zeros(2)
        x = jnp.array([1.0, 0.0])
        glag_old = jnp.zeros(2)
        glag = jnp.array([2.0, 0.0])

        B_new = bfgs_update(sp, B, x, x_old, glag, glag_old)

        np.testing.assert_allclose(sp.to_dense(B_new), [[2.0, 0.0], [0.0, 1.0]])
        np.testing.assert_allclose(sp.mv(B_new, x - x_old), glag - glag_old)

    def test_damping_keeps_positive_definite(self):
        """Negative curvature along the step is damped away."""
        sp = Sparsity.dense(2, 2)
        B = bfgs_reset(sp, jnp.zeros(4))
        x = jnp.array([1.0, 0.0])
        glag = jnp.array([-1.0, 0.0])

        B_new = bfgs_update(sp, B, x, jnp.zeros(2), glag, jnp.zeros(2))

        # phi = 0.4, damped y = [0.2, 0]
        np.testing.assert_allclose(sp.to_dense(B_new), [[0.2, 0.0], [0.0, 1.0]])
        assert jnp.all(jnp.linalg.eigvalsh(sp.to_dense(B_new)) > 0)

    def test_zero_step_skips_update(self):
        sp = Sparsity.dense(2, 2)
        B = sp.get_nz(jnp.array([[2.0, 0.5], [0.5, 1.0]]))
        x = jnp.array([1.0, 1.0])

        B_new = bfgs_update(sp, B, x, x, jnp.array([1.0, 0.0]), jnp.zeros(2))
        np.testing.assert_allclose(B_new, B)


def _nlp():
    return JaxNLP(
        f=lambda x, p: x[0] ** 4 + x[0] * x[1],
        nx=2,
        g=lambda x, p: jnp.array([x[1] ** 2]),
        ng=1,
    )


class TestStrategies:
    """Tests for the exact and limited-memory strategies."""

    def test_exact_hessian(self):
        nlp = _nlp()
        exact = ExactHessian()
        x = jnp.array([1.0, 0.0])
        mu = jnp.array([2.0])

        B, reg = exact.initial(nlp, x, None, mu)
        assert reg == 0.0
        assert exact.sparsity(nlp).same_pattern(nlp.hess_sparsity())
        np.testing.assert_allclose(
            nlp.hess_sparsity().to_dense(B), [[12.0, 1.0], [1.0, 4.0]]
        )

    def test_exact_hessian_regularized(self):
        nlp = _nlp()
        exact = ExactHessian(regularize=True)
        x = jnp.array([0.0, 0.0])
        mu = jnp.array([0.0])

        # [[0, 1], [1, 0]] is shifted by 1
        B, reg = exact.update(nlp, 1, None, x, x, None, mu, None, None)
        assert reg == pytest.approx(1.0)
        np.testing.assert_allclose(
            nlp.hess_sparsity().to_dense(B), [[1.0, 1.0], [1.0, 1.0]]
        )

    def test_limited_memory_initial_is_identity(self):
        nlp = _nlp()
        lbfgs = LimitedMemoryHessian(memory=3)
        B, reg = lbfgs.initial(nlp, jnp.zeros(2), None, jnp.zeros(1))

        assert reg == 0.0
        assert lbfgs.sparsity(nlp).nnz == 4
        np.testing.assert_allclose(lbfgs.sparsity(nlp).to_dense(B), jnp.eye(2))

    def test_limited_memory_restart(self):
        """At a restart iteration the result forgets the previous matrix."""
        nlp = _nlp()
        lbfgs = LimitedMemoryHessian(memory=3)
        sp = lbfgs.sparsity(nlp)
        x_old = jnp.zeros(2)
        x = jnp.array([0.5, -0.25])
        glag_old = jnp.zeros(2)
        glag = jnp.array([1.0, -0.2])
        B_a = sp.get_nz(jnp.array([[5.0, 1.0], [1.0, 3.0]]))
        B_b = sp.get_nz(jnp.array([[0.5, 0.0], [0.0, 9.0]]))

        args = (x, x_old, None, jnp.zeros(1), glag, glag_old)
        restarted_a, _ = lbfgs.update(nlp, 6, B_a, *args)
        restarted_b, _ = lbfgs.update(nlp, 6, B_b, *args)
        np.testing.assert_allclose(restarted_a, restarted_b)

        expected = bfgs_update(sp, bfgs_reset(sp, B_a), x, x_old, glag, glag_old)
        np.testing.assert_allclose(restarted_a, expected)

        # Off the restart schedule the history is kept
        kept_a, _ = lbfgs.update(nlp, 7, B_a, *args)
        kept_b, _ = lbfgs.update(nlp, 7, B_b, *args)
        assert not np.allclose(kept_a, kept_b)

    def test_make_hessian_approximation(self):
        assert isinstance(make_hessian_approximation("exact", True, 10), ExactHessian)
        lbfgs = make_hessian_approximation("limited-memory", False, 5)
        assert isinstance(lbfgs, LimitedMemoryHessian)
        assert lbfgs.memory == 5
        assert lbfgs.needs_old_gradient
        assert not ExactHessian.needs_old_gradient

    def test_invalid_options(self):
        with pytest.raises(ValueError, match="hessian_approximation"):
            make_hessian_approximation("bfgs", False, 10)
        with pytest.raises(ValueError, match="lbfgs_memory"):
            make_hessian_approximation("limited-memory", False, 0)
