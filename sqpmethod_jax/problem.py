"""Problem interface for the SQP method.

The solver never differentiates anything itself. It talks to an
:class:`AbstractNLP`, which evaluates the objective, the constraints
and their derivatives at a point ``x`` for fixed parameters ``p``:

    evaluate(x, p)                -> (f, g)
    evaluate_grad(x, p)           -> (f, ∇f)
    evaluate_jac(x, p)            -> (g, nonzeros of dg/dx)
    evaluate_hess(x, p, sigma, λ) -> nonzeros of sigma ∇²f + Σ λ_i ∇²g_i

Jacobian and Hessian values are returned as the nonzeros of the fixed
patterns reported by ``jac_sparsity()`` and ``hess_sparsity()``.

:class:`JaxNLP` is the default backend: it builds all four functions
from plain JAX callables, using user-supplied derivatives when given
and ``jax.grad`` / ``jax.jacrev`` / ``jax.hessian`` otherwise.
"""

import abc
from collections.abc import Callable
from typing import Any, Optional

import equinox as eqx
import jax
import jax.numpy as jnp

from sqpmethod_jax.sparsity import Sparsity
from sqpmethod_jax.types import (
    ConstraintFn,
    GradFn,
    HessianFn,
    JacobianFn,
    ObjectiveFn,
    ScalarLike,
)
from sqpmethod_jax.utils import FunctionStats, args_closure


class FunctionEvaluationError(RuntimeError):
    """Raised when a problem function fails or returns non-finite values."""

    def __init__(self, name: str, reason: str = "evaluation failed"):
        super().__init__(f"{name}: {reason}")
        self.name = name


def _check_finite(name: str, *values: jax.Array) -> None:
    for value in values:
        if not bool(jnp.all(jnp.isfinite(value))):
            raise FunctionEvaluationError(name, "non-finite value in output")


class AbstractNLP(eqx.Module):
    """Nonlinear program ``min f(x) s.t. lbg <= g(x) <= ubg``.

    Bounds are not part of the problem; they are passed to the solver.

    Backends must report a failed evaluation by raising
    :class:`FunctionEvaluationError`. The line search backtracks from a
    trial point only on that exception; any other exception raised by a
    backend ends the solve.
    """

    nx: eqx.AbstractVar[int]
    ng: eqx.AbstractVar[int]

    @abc.abstractmethod
    def hess_sparsity(self) -> Sparsity:
        """Pattern of the (symmetric) Hessian of the Lagrangian."""

    @abc.abstractmethod
    def jac_sparsity(self) -> Sparsity:
        """Pattern of the ``ng x nx`` constraint Jacobian."""

    @abc.abstractmethod
    def evaluate(self, x: jax.Array, p: Any) -> tuple[jax.Array, jax.Array]:
        """Objective and constraint values.

        Raises:
            FunctionEvaluationError: If the values cannot be computed or are
                not finite. The line search treats this as a failed trial.
        """

    @abc.abstractmethod
    def evaluate_grad(self, x: jax.Array, p: Any) -> tuple[jax.Array, jax.Array]:
        """Objective value and gradient.

        Raises:
            FunctionEvaluationError: If the evaluation fails.
        """

    @abc.abstractmethod
    def evaluate_jac(self, x: jax.Array, p: Any) -> tuple[jax.Array, jax.Array]:
        """Constraint values and Jacobian nonzeros.

        Raises:
            FunctionEvaluationError: If the evaluation fails.
        """

    @abc.abstractmethod
    def evaluate_hess(
        self, x: jax.Array, p: Any, sigma: ScalarLike, lam: jax.Array
    ) -> jax.Array:
        """Nonzeros of the Hessian of ``sigma * f + lam^T g``."""


class JaxNLP(AbstractNLP):
    """NLP defined by JAX-traceable callables.

    Attributes:
        f: Objective ``f(x, p) -> scalar``.
        nx: Number of decision variables.
        g: Constraint function ``g(x, p) -> (ng,)`` or None.
        ng: Number of constraints (static).
        grad_f_fn: Optional gradient of the objective.
        jac_g_fn: Optional dense Jacobian of the constraints.
        hess_lag_fn: Optional dense Hessian of the Lagrangian
            ``hess_lag_fn(x, p, sigma, lam)``.
        hess_pattern: Optional Hessian pattern (dense if omitted).
        jac_pattern: Optional Jacobian pattern (dense if omitted).

    Example:
        >>> import jax.numpy as jnp
        >>> from sqpmethod_jax import JaxNLP
        >>>
        >>> nlp = JaxNLP(
        ...     f=lambda x, p: jnp.sum(x**2),
        ...     nx=2,
        ...     g=lambda x, p: jnp.array([x[0] + x[1]]),
        ...     ng=1,
        ... )
    """

    f: ObjectiveFn = eqx.field(static=True)
    nx: int = eqx.field(static=True)
    g: Optional[ConstraintFn] = eqx.field(static=True, default=None)
    ng: int = eqx.field(static=True, default=0)

    grad_f_fn: Optional[GradFn] = eqx.field(static=True, default=None)
    jac_g_fn: Optional[JacobianFn] = eqx.field(static=True, default=None)
    hess_lag_fn: Optional[HessianFn] = eqx.field(static=True, default=None)

    hess_pattern: Optional[Sparsity] = None
    jac_pattern: Optional[Sparsity] = None

    def __check_init__(self):
        if self.nx < 0 or self.ng < 0:
            raise ValueError("nx and ng must be nonnegative")
        if self.ng > 0 and self.g is None:
            raise ValueError(f"ng={self.ng} but no constraint function was given")
        if self.hess_pattern is not None:
            if self.hess_pattern.shape != (self.nx, self.nx):
                raise ValueError("Hessian pattern must be nx x nx")
            if not self.hess_pattern.is_symmetric():
                raise ValueError("Hessian pattern must be symmetric")
        if self.jac_pattern is not None and self.jac_pattern.shape != (
            self.ng,
            self.nx,
        ):
            raise ValueError("Jacobian pattern must be ng x nx")

    def hess_sparsity(self) -> Sparsity:
        if self.hess_pattern is not None:
            return self.hess_pattern
        return Sparsity.dense(self.nx, self.nx)

    def jac_sparsity(self) -> Sparsity:
        if self.jac_pattern is not None:
            return self.jac_pattern
        return Sparsity.dense(self.ng, self.nx)

    def _constraints(self, x: jax.Array, p: Any) -> jax.Array:
        if self.g is None or self.ng == 0:
            return jnp.zeros((0,), dtype=x.dtype)
        return jnp.asarray(self.g(x, p)).reshape(self.ng)

    def _call(self, name: str, fn: Callable, *args):
        try:
            return fn(*args)
        except FunctionEvaluationError:
            raise
        except Exception as e:
            raise FunctionEvaluationError(name, f"{type(e).__name__}: {e}") from e

    def evaluate(self, x, p):
        def fg(x, p):
            return jnp.asarray(self.f(x, p)).reshape(()), self._constraints(x, p)

        f, g = self._call("nlp_fg", fg, x, p)
        _check_finite("nlp_fg", f, g)
        return f, g

    def evaluate_grad(self, x, p):
        def grad_f(x, p):
            f = jnp.asarray(self.f(x, p)).reshape(())
            if self.grad_f_fn is not None:
                return f, jnp.asarray(self.grad_f_fn(x, p)).reshape(self.nx)
            return f, jax.grad(args_closure(self.f, p))(x)

        f, gf = self._call("nlp_grad_f", grad_f, x, p)
        _check_finite("nlp_grad_f", f, gf)
        return f, gf

    def evaluate_jac(self, x, p):
        sp = self.jac_sparsity()

        def jac_g(x, p):
            g = self._constraints(x, p)
            if self.ng == 0:
                return g, jnp.zeros((0,), dtype=x.dtype)
            if self.jac_g_fn is not None:
                J = jnp.asarray(self.jac_g_fn(x, p)).reshape(self.ng, self.nx)
            else:
                J = jax.jacrev(lambda y: self._constraints(y, p))(x)
            return g, sp.get_nz(J)

        g, jac_nz = self._call("nlp_jac_g", jac_g, x, p)
        _check_finite("nlp_jac_g", g, jac_nz)
        return g, jac_nz

    def evaluate_hess(self, x, p, sigma, lam):
        sp = self.hess_sparsity()

        def hess_l(x, p):
            if self.hess_lag_fn is not None:
                H = jnp.asarray(self.hess_lag_fn(x, p, sigma, lam))
                H = H.reshape(self.nx, self.nx)
            else:

                def lagrangian(y):
                    obj = sigma * jnp.asarray(self.f(y, p)).reshape(())
                    if self.ng == 0:
                        return obj
                    return obj + jnp.dot(lam, self._constraints(y, p))

                H = jax.hessian(lagrangian)(x)
            return sp.get_nz(H)

        hess_nz = self._call("nlp_hess_l", hess_l, x, p)
        _check_finite("nlp_hess_l", hess_nz)
        return hess_nz


class InstrumentedNLP(AbstractNLP):
    """Wraps a problem and records call counts and wall time per function."""

    nlp: AbstractNLP
    stats: FunctionStats = eqx.field(static=True)

    @property
    def nx(self) -> int:
        return self.nlp.nx

    @property
    def ng(self) -> int:
        return self.nlp.ng

    def hess_sparsity(self) -> Sparsity:
        return self.nlp.hess_sparsity()

    def jac_sparsity(self) -> Sparsity:
        return self.nlp.jac_sparsity()

    def evaluate(self, x, p):
        with self.stats.timed("nlp_fg"):
            return self.nlp.evaluate(x, p)

    def evaluate_grad(self, x, p):
        with self.stats.timed("nlp_grad_f"):
            return self.nlp.evaluate_grad(x, p)

    def evaluate_jac(self, x, p):
        with self.stats.timed("nlp_jac_g"):
            return self.nlp.evaluate_jac(x, p)

    def evaluate_hess(self, x, p, sigma, lam):
        with self.stats.timed("nlp_hess_l"):
            return self.nlp.evaluate_hess(x, p, sigma, lam)
