"""
Bounded iteration helpers shared by the optimizer and the stock planner.

iterate_until drives the EC scaling loop, the Si re-solve loop and the tank
count escalation; first_success composes ordered solver strategies.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Generic, Iterable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class IterationResult(Generic[T]):
    value: T
    iterations: int
    converged: bool


def iterate_until(
    predicate: Callable[[T], bool],
    max_iters: int,
    step_fn: Callable[[T], T],
    initial: T,
) -> IterationResult[T]:
    """
    Apply step_fn to the state until predicate holds or max_iters steps ran.

    The predicate is checked before every step, so an initial state that
    already satisfies it is returned with zero iterations.
    """
    value = initial
    for iteration in range(max_iters):
        if predicate(value):
            return IterationResult(value=value, iterations=iteration, converged=True)
        value = step_fn(value)
    return IterationResult(value=value, iterations=max_iters, converged=predicate(value))


def first_success(strategies: Iterable[Callable[[], Optional[T]]]) -> Optional[T]:
    """Run strategies in order and return the first non-None result."""
    for strategy in strategies:
        result = strategy()
        if result is not None:
            return result
        logger.debug(f"[Strategy] {getattr(strategy, '__name__', strategy)} gave no solution")
    return None
