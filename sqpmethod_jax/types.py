"""Type definitions for sqpmethod-jax.

This module contains type aliases and custom types used throughout the package.
All types use jaxtyping for runtime type checking with beartype.
"""

from collections.abc import Callable
from typing import Any, Optional, Union

from jaxtyping import Array, Float

# Type aliases for common array shapes
Scalar = Float[Array, ""]
Vector = Float[Array, " n"]

# Python floats are accepted wherever a scalar is read but never stored
ScalarLike = Union[float, Scalar]

# Objective function type: f(x, p) -> scalar
ObjectiveFn = Callable[[Vector, Any], Scalar]

# Constraint function type: g(x, p) -> constraint values, bounded by lbg <= g <= ubg
ConstraintFn = Callable[[Vector, Any], Float[Array, " m"]]

# Gradient function type: grad_f(x, p) -> ∇f(x)
GradFn = Callable[[Vector, Any], Vector]

# Jacobian function type: jac_g(x, p) -> J(x) where J[i, j] = dg_i/dx_j
JacobianFn = Callable[[Vector, Any], Float[Array, "m n"]]

# Hessian of the Lagrangian: hess_lag(x, p, sigma, lam) -> sigma ∇²f + Σ lam_i ∇²g_i
HessianFn = Callable[[Vector, Any, Scalar, Float[Array, " m"]], Float[Array, "n n"]]

# Iteration callback: callback(f, x, lam_g, lam_x, g) -> 0/None to continue
IterationCallback = Callable[..., Optional[int]]


# Result codes for solver termination
class ReturnStatus:
    """Constants for solver termination status."""

    SUCCESS = "Solve_Succeeded"
    MAX_ITERATIONS = "Maximum_Iterations_Exceeded"
    STEP_TOO_SMALL = "Search_Direction_Becomes_Too_Small"
    USER_STOP = "User_Requested_Stop"
