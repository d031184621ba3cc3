"""Hessian of the Lagrangian for the SQP method.

Two mutually exclusive strategies maintain the matrix ``Bk`` passed to
the QP subproblem, both stored as nonzeros over a fixed pattern:

* :class:`ExactHessian` re-evaluates the Hessian of the Lagrangian at
  every accepted iterate. With ``regularize=True`` a Gershgorin lower
  bound on the eigenvalues is computed per column,

      bound(c) = H[c, c] - sum_{r != c} |H[r, c]|

  and, if the smallest bound is negative, its magnitude is added to the
  diagonal so that every Gershgorin disc ends up in the nonnegative half
  line.

* :class:`LimitedMemoryHessian` starts from the identity and applies a
  damped BFGS update after every step, restarting from the identity
  every ``memory`` iterations. The pattern is dense.

Powell's damping modifies the gradient difference so that the curvature
condition s^T y >= 0.2 s^T B s holds, which keeps the update positive
definite even when the Lagrangian is not convex along the step.
"""

import abc
from typing import Any, ClassVar

import equinox as eqx
import jax
import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Float, jaxtyped

from sqpmethod_jax.problem import AbstractNLP
from sqpmethod_jax.sparsity import Sparsity
from sqpmethod_jax.types import ScalarLike


@jaxtyped(typechecker=beartype)
def compute_lagrangian_gradient(
    grad_f: Float[Array, " n"],
    jac_sp: Sparsity,
    jac: Float[Array, " nnz"],
    mu: Float[Array, " m"],
    mu_x: Float[Array, " n"],
) -> Float[Array, " n"]:
    """Compute the gradient of the Lagrangian function.

    The Lagrangian is:
        L(x, mu, mu_x) = f(x) + mu^T g(x) + mu_x^T x

    Its gradient with respect to x is:
        nabla_x L = nabla f(x) + J^T mu + mu_x

    Args:
        grad_f: Gradient of objective function nabla f(x).
        jac_sp: Sparsity of the constraint Jacobian (m x n).
        jac: Nonzeros of the constraint Jacobian.
        mu: Constraint multipliers.
        mu_x: Bound multipliers.

    Returns:
        Gradient of Lagrangian nabla_x L.
    """
    grad_L = grad_f + mu_x
    if jac_sp.nrow > 0:
        grad_L = grad_L + jac_sp.mv(jac, mu, transpose=True)
    return grad_L


@jaxtyped(typechecker=beartype)
def gershgorin_bounds(sp: Sparsity, H: Float[Array, " nnz"]) -> Float[Array, " n"]:
    """Per-column Gershgorin lower bound on the eigenvalues of H.

    Columns without entries get a bound of zero.
    """
    contributions = jnp.where(sp.diagonal_mask, H, -jnp.abs(H))
    return jax.ops.segment_sum(contributions, sp.col, sp.ncol)


def gershgorin_regularization(sp: Sparsity, H: Float[Array, " nnz"]) -> float:
    """Diagonal shift making every Gershgorin lower bound nonnegative.

    Returns ``max(0, -min_c bound(c))``, i.e. 0 when no shift is needed.
    """
    if sp.ncol == 0:
        return 0.0
    return float(-jnp.minimum(jnp.min(gershgorin_bounds(sp, H)), 0.0))


@jaxtyped(typechecker=beartype)
def regularize(
    sp: Sparsity, H: Float[Array, " nnz"], reg: ScalarLike
) -> Float[Array, " nnz"]:
    """Add ``reg`` to every diagonal nonzero of H."""
    return jnp.where(sp.diagonal_mask, H + reg, H)


@jaxtyped(typechecker=beartype)
def bfgs_reset(sp: Sparsity, H: Float[Array, " nnz"]) -> Float[Array, " nnz"]:
    """Reset H to the identity (ones on the diagonal, zeros elsewhere)."""
    return jnp.where(sp.diagonal_mask, 1.0, 0.0).astype(H.dtype)


@jaxtyped(typechecker=beartype)
def bfgs_update(
    sp: Sparsity,
    H: Float[Array, " nnz"],
    x: Float[Array, " n"],
    x_old: Float[Array, " n"],
    glag: Float[Array, " n"],
    glag_old: Float[Array, " n"],
    damping_threshold: float = 0.2,
) -> Float[Array, " nnz"]:
    """Damped BFGS update of the Hessian approximation over its pattern.

    With s = x - x_old, y = glag - glag_old and q = B s:

        omega = s^T B s,  theta = s^T y
        if theta < threshold * omega:
            phi = (1 - threshold) * omega / (omega - theta)
            y   = phi * y + (1 - phi) * q
        B <- B + y y^T / (s^T y) - q q^T / omega

    The update is skipped when omega or the damped curvature is not
    positive (e.g. for a zero step) or not finite.

    Args:
        sp: Hessian sparsity pattern.
        H: Current nonzeros of the approximation.
        x: New iterate.
        x_old: Previous iterate.
        glag: Lagrangian gradient at x (new multipliers).
        glag_old: Lagrangian gradient at x_old (new multipliers).
        damping_threshold: Powell damping threshold (default 0.2).

    Returns:
        Updated nonzeros.
    """
    s = x - x_old
    y = glag - glag_old
    q = sp.mv(H, s)
    omega = jnp.dot(s, q)
    theta = jnp.dot(s, y)

    use_damping = theta < damping_threshold * omega
    phi = jnp.where(
        use_damping,
        (1.0 - damping_threshold) * omega / jnp.where(use_damping, omega - theta, 1.0),
        1.0,
    )
    y_damped = phi * y + (1.0 - phi) * q
    theta_damped = jnp.dot(s, y_damped)

    should_skip = (
        ~(omega > 0.0)
        | ~(theta_damped > 0.0)
        | ~jnp.isfinite(omega)
        | ~jnp.isfinite(theta_damped)
    )

    def do_update():
        updated = sp.rank1(H, 1.0 / theta_damped, y_damped, y_damped)
        return sp.rank1(updated, -1.0 / omega, q, q)

    def skip():
        return H

    return jax.lax.cond(should_skip, skip, do_update)


class AbstractHessianApproximation(eqx.Module):
    """Strategy maintaining ``Bk`` across SQP iterations."""

    needs_old_gradient: eqx.AbstractClassVar[bool]

    @abc.abstractmethod
    def sparsity(self, problem: AbstractNLP) -> Sparsity:
        """Pattern of ``Bk`` for this problem."""

    @abc.abstractmethod
    def initial(
        self, problem: AbstractNLP, x: Float[Array, " n"], p: Any, mu: Float[Array, " m"]
    ) -> tuple[Float[Array, " nnz"], float]:
        """Initial ``(Bk, reg)`` at the starting point."""

    @abc.abstractmethod
    def update(
        self,
        problem: AbstractNLP,
        iteration: int,
        B: Float[Array, " nnz"],
        x: Float[Array, " n"],
        x_old: Float[Array, " n"],
        p: Any,
        mu: Float[Array, " m"],
        glag: Float[Array, " n"],
        glag_old: Float[Array, " n"],
    ) -> tuple[Float[Array, " nnz"], float]:
        """``(Bk, reg)`` after an accepted step."""


class ExactHessian(AbstractHessianApproximation):
    """Exact Hessian of the Lagrangian, optionally Gershgorin-regularized.

    Attributes:
        regularize: Shift the diagonal when a Gershgorin bound is negative.
    """

    regularize: bool = eqx.field(static=True, default=False)

    needs_old_gradient: ClassVar[bool] = False

    def sparsity(self, problem):
        return problem.hess_sparsity()

    def _evaluate(self, problem, x, p, mu):
        sp = problem.hess_sparsity()
        B = problem.evaluate_hess(x, p, 1.0, mu)
        reg = 0.0
        if self.regularize:
            reg = gershgorin_regularization(sp, B)
            if reg > 0:
                B = regularize(sp, B, reg)
        return B, reg

    def initial(self, problem, x, p, mu):
        return self._evaluate(problem, x, p, mu)

    def update(self, problem, iteration, B, x, x_old, p, mu, glag, glag_old):
        return self._evaluate(problem, x, p, mu)


class LimitedMemoryHessian(AbstractHessianApproximation):
    """Damped BFGS approximation with periodic restarts.

    Attributes:
        memory: Restart period in iterations. The approximation is reset to
            the identity right before the update of every iteration that is
            a multiple of ``memory``.
    """

    memory: int = eqx.field(static=True, default=10)

    needs_old_gradient: ClassVar[bool] = True

    def __check_init__(self):
        if self.memory < 1:
            raise ValueError("lbfgs_memory must be at least 1")

    def sparsity(self, problem):
        return Sparsity.dense(problem.nx, problem.nx)

    def initial(self, problem, x, p, mu):
        sp = self.sparsity(problem)
        return bfgs_reset(sp, jnp.ones(sp.nnz, dtype=x.dtype)), 0.0

    def update(self, problem, iteration, B, x, x_old, p, mu, glag, glag_old):
        sp = self.sparsity(problem)
        if iteration % self.memory == 0:
            B = bfgs_reset(sp, B)
        return bfgs_update(sp, B, x, x_old, glag, glag_old), 0.0


def make_hessian_approximation(
    hessian_approximation: str, regularize: bool, lbfgs_memory: int
) -> AbstractHessianApproximation:
    """Build the strategy named by the ``hessian_approximation`` option."""
    if hessian_approximation == "exact":
        return ExactHessian(regularize=regularize)
    if hessian_approximation == "limited-memory":
        return LimitedMemoryHessian(memory=lbfgs_memory)
    raise ValueError(
        f"hessian_approximation must be 'exact' or 'limited-memory', "
        f"got {hessian_approximation!r}"
    )
