"""L1 Merit Function and Line Search for the SQP method.

This module implements the L1 merit function and the nonmonotone
backtracking line search used to globalize the SQP iteration.

The merit function is:
    φ(x; σ) = f(x) + σ * max(viol(x, lbx, ubx), viol(g(x), lbg, ubg))

where viol(v, lb, ub) is the largest bound violation of v and σ is the
penalty parameter, chosen larger than every QP dual seen so far.

The line search is nonmonotone: a trial point is compared against the
largest merit value stored in a short window of recent iterates rather
than against the current one, which lets the iterates climb out of
narrow valleys.
"""

import logging
from typing import Any, NamedTuple

import equinox as eqx
import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Float, Int, jaxtyped

from sqpmethod_jax.problem import AbstractNLP, FunctionEvaluationError
from sqpmethod_jax.types import Scalar, ScalarLike

_log = logging.getLogger(__name__)


class LineSearchResult(NamedTuple):
    """Result from the line search.

    Attributes:
        t: The step size found.
        x: Accepted candidate point.
        f_val: Objective value at the candidate.
        g_val: Constraint values at the candidate.
        merit: Merit value at the candidate.
        success: Whether the Armijo condition was satisfied.
        n_trials: Number of trial points (including failed evaluations).
    """

    t: float
    x: Float[Array, " n"]
    f_val: Scalar
    g_val: Float[Array, " m"]
    merit: float
    success: bool
    n_trials: int


@jaxtyped(typechecker=beartype)
def max_violation(
    v: Float[Array, " k"], lb: Float[Array, " k"], ub: Float[Array, " k"]
) -> Scalar:
    """Largest violation of ``lb <= v <= ub`` (0 when satisfied or empty)."""
    if v.shape[0] == 0:
        return jnp.zeros((), dtype=v.dtype)
    return jnp.maximum(jnp.max(jnp.maximum(v - ub, lb - v)), 0.0)


@jaxtyped(typechecker=beartype)
def l1_infeasibility(
    x: Float[Array, " n"],
    lbx: Float[Array, " n"],
    ubx: Float[Array, " n"],
    g: Float[Array, " m"],
    lbg: Float[Array, " m"],
    ubg: Float[Array, " m"],
) -> Scalar:
    """Primal infeasibility: the worst bound or constraint violation."""
    return jnp.maximum(max_violation(x, lbx, ubx), max_violation(g, lbg, ubg))


def compute_merit(f_val: ScalarLike, infeasibility: ScalarLike, sigma: ScalarLike) -> float:
    """Compute the L1 merit value φ = f + σ * infeasibility."""
    return float(f_val + sigma * infeasibility)


@jaxtyped(typechecker=beartype)
def update_penalty_parameter(
    sigma: ScalarLike,
    dual_x: Float[Array, " n"],
    dual_a: Float[Array, " m"],
    margin: float = 1.01,
) -> float:
    """Update the penalty parameter based on the QP duals.

    The penalty is never decreased, and is kept at least ``margin`` times
    the largest dual magnitude seen so far:

        σ = max(σ, margin * ‖λx‖∞, margin * ‖λa‖∞)

    Args:
        sigma: Current penalty parameter.
        dual_x: QP duals of the variable bounds.
        dual_a: QP duals of the linearized constraints.
        margin: Safety margin factor (default 1.01).

    Returns:
        Updated penalty parameter.
    """
    new_sigma = float(sigma)
    for dual in (dual_x, dual_a):
        if dual.shape[0] > 0:
            new_sigma = max(new_sigma, margin * float(jnp.max(jnp.abs(dual))))
    return new_sigma


class MeritMemory(eqx.Module):
    """Fixed-capacity FIFO window of recent merit values.

    Stored as a circular buffer; once full, each push evicts the oldest
    value.

    Attributes:
        values: Buffer of capacity entries.
        count: Number of valid values stored (0 to capacity).
        next_idx: Next write position in the circular buffer.
    """

    values: Float[Array, " capacity"]
    count: Int[Array, ""]
    next_idx: Int[Array, ""]

    @property
    def capacity(self) -> int:
        return int(self.values.shape[0])

    @property
    def size(self) -> int:
        return int(self.count)

    def chronological(self) -> Float[Array, " size"]:
        """Stored values, oldest first."""
        k = self.capacity
        start = (self.next_idx - self.count + k) % k
        return self.values[(start + jnp.arange(self.size)) % k]

    def max(self) -> float:
        """Reference value of the nonmonotone Armijo test."""
        if self.size == 0:
            raise ValueError("Merit memory is empty")
        return float(jnp.max(self.chronological()))


def merit_memory_init(capacity: int) -> MeritMemory:
    """Initialize an empty merit window holding up to ``capacity`` values."""
    if capacity < 1:
        raise ValueError("merit_memory must be at least 1")
    return MeritMemory(
        values=jnp.zeros((capacity,)),
        count=jnp.array(0),
        next_idx=jnp.array(0),
    )


def merit_memory_push(memory: MeritMemory, value: ScalarLike) -> MeritMemory:
    """Append ``value``, evicting the oldest entry when the window is full."""
    k = memory.capacity
    idx = memory.next_idx
    return MeritMemory(
        values=memory.values.at[idx].set(value),
        count=jnp.minimum(memory.count + 1, k),
        next_idx=(idx + 1) % k,
    )


def backtracking_line_search(
    problem: AbstractNLP,
    p: Any,
    x: Float[Array, " n"],
    direction: Float[Array, " n"],
    lbx: Float[Array, " n"],
    ubx: Float[Array, " n"],
    lbg: Float[Array, " m"],
    ubg: Float[Array, " m"],
    sigma: float,
    memory: MeritMemory,
    directional_derivative: float,
    c1: float = 1e-4,
    beta: float = 0.8,
    max_iter: int = 3,
) -> LineSearchResult:
    """Perform nonmonotone backtracking line search with the L1 merit function.

    Finds t such that the Armijo condition is satisfied:
        φ(x + t*d; σ) ≤ max(memory) + t * c1 * φ'(x; d, σ)

    where the directional derivative estimate is
        φ'(x; d, σ) = ∇f · d - σ * infeasibility(x).

    A trial point whose evaluation fails counts as a trial and is
    backtracked from; it never ends the search. Once ``max_iter`` trials
    have been spent, the next evaluated candidate that fails the test is
    accepted anyway with ``success=False``.

    Args:
        problem: Problem interface used to evaluate trial points.
        p: Fixed problem parameters.
        x: Current point.
        direction: Search direction (QP step).
        lbx: Variable lower bounds.
        ubx: Variable upper bounds.
        lbg: Constraint lower bounds.
        ubg: Constraint upper bounds.
        sigma: Penalty parameter.
        memory: Merit window, already holding the value at x.
        directional_derivative: φ'(x; d, σ).
        c1: Armijo condition parameter (default 1e-4).
        beta: Step reduction factor (default 0.8).
        max_iter: Maximum number of trials (must be positive).

    Returns:
        LineSearchResult with the accepted step size and candidate values.
    """
    merit_max = memory.max()
    t = 1.0
    n_trials = 0

    while True:
        x_cand = x + t * direction
        try:
            f_cand, g_cand = problem.evaluate(x_cand, p)
        except FunctionEvaluationError as e:
            n_trials += 1
            _log.debug("Line-search trial t=%g failed: %s", t, e)
            t = beta * t
            continue

        n_trials += 1
        merit_cand = compute_merit(
            f_cand, l1_infeasibility(x_cand, lbx, ubx, g_cand, lbg, ubg), sigma
        )
        if merit_cand <= merit_max + t * c1 * directional_derivative:
            _log.debug("Line-search completed, candidate accepted (t=%g)", t)
            return LineSearchResult(
                t=t,
                x=x_cand,
                f_val=f_cand,
                g_val=g_cand,
                merit=merit_cand,
                success=True,
                n_trials=n_trials,
            )

        if n_trials >= max_iter:
            _log.debug("Line-search completed, maximum number of iterations")
            return LineSearchResult(
                t=t,
                x=x_cand,
                f_val=f_cand,
                g_val=g_cand,
                merit=merit_cand,
                success=False,
                n_trials=n_trials,
            )

        t = beta * t
