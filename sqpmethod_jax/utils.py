import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

import jax

T = TypeVar("T")


def args_closure(
    fn: Callable[[jax.Array, T], jax.Array], args: T
) -> Callable[[jax.Array], jax.Array]:
    def wrapped(x: jax.Array) -> jax.Array:
        return fn(x, args)

    return wrapped


class FunctionStats:
    """Call counts and accumulated wall time per named function."""

    def __init__(self) -> None:
        self.n_call: dict[str, int] = defaultdict(int)
        self.t_wall: dict[str, float] = defaultdict(float)

    @contextmanager
    def timed(self, name: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self.n_call[name] += 1
            self.t_wall[name] += time.perf_counter() - start

    def as_dict(self, names: tuple[str, ...] = ()) -> dict[str, float]:
        """Flatten into ``n_call_<name>`` / ``t_wall_<name>`` entries.

        Names listed in ``names`` are always present, even when never called.
        """
        out: dict[str, float] = {}
        for name in sorted(set(names) | set(self.n_call)):
            out[f"n_call_{name}"] = self.n_call.get(name, 0)
            out[f"t_wall_{name}"] = self.t_wall.get(name, 0.0)
        return out
