"""
Non-negative least squares fallback for the formula optimizer.

Used when no MILP backend is available. Solves min ||W(A^T x - t)||^2 with
x >= 0 by projected gradient descent, then looks for the fewest fertilizers
that still land every targeted nutrient within tolerance:

1. exhaustive search over subsets of size 1..4 (only for <= 8 candidates)
2. full NNLS followed by greedy pruning
3. full NNLS with every candidate

The strategies are tried in that order and the first one that yields a
solution wins.

Matrix convention: rows are fertilizers, columns are nutrients, values are
ppm per gram at the working volume.
"""
import itertools
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from hydrodoser.services.hydro_convergence import first_success
from hydrodoser.services.hydro_rules import (
    FORMULA_MIN_GRAMS,
    FORMULA_TOLERANCE,
    NNLS_ITERATIONS,
    NNLS_SUBSET_ITERATIONS,
    NNLS_PRUNE_ITERATIONS,
    NNLS_LEARNING_RATES,
    NNLS_DECAY_POINTS,
    NNLS_L2_REGULARIZATION,
    NNLS_SOFT_WEIGHT,
    NNLS_UNTARGETED_ERROR_WEIGHT,
    EXHAUSTIVE_MAX_CANDIDATES,
    EXHAUSTIVE_MAX_SUBSET,
)

logger = logging.getLogger(__name__)


@dataclass
class NnlsSolution:
    x: np.ndarray
    achieved: np.ndarray
    error: float
    active: List[int] = field(default_factory=list)
    strategy: str = "nnls"

    def rank_key(self):
        return (len(self.active), self.error)


def build_weights(target: Sequence[float]) -> np.ndarray:
    """1 for targeted nutrients, a soft weight for the rest (all 1 when nothing is targeted)."""
    t = np.asarray(target, dtype=float)
    if not np.any(t > 0):
        return np.ones_like(t)
    return np.where(t > 0, 1.0, NNLS_SOFT_WEIGHT)


def relative_error(achieved: np.ndarray, target: np.ndarray) -> float:
    """Squared relative error on targeted nutrients plus a small penalty on untargeted ppm."""
    targeted = target > 0
    error = 0.0
    if np.any(targeted):
        error += float(np.sum(((achieved[targeted] - target[targeted]) / target[targeted]) ** 2))
    error += float(np.sum(achieved[~targeted] ** 2)) * NNLS_UNTARGETED_ERROR_WEIGHT
    return error


def within_tolerance(achieved: np.ndarray, target: np.ndarray, tolerance: float) -> bool:
    targeted = target > 0
    if not np.any(targeted):
        return True
    deviation = np.abs(achieved[targeted] - target[targeted]) / target[targeted]
    return bool(np.all(deviation <= tolerance + 1e-12))


def _learning_rate(iteration: int, iterations: int) -> float:
    if iteration < iterations * NNLS_DECAY_POINTS[0]:
        return NNLS_LEARNING_RATES[0]
    if iteration < iterations * NNLS_DECAY_POINTS[1]:
        return NNLS_LEARNING_RATES[1]
    return NNLS_LEARNING_RATES[2]


def solve_nnls(
    matrix,
    target,
    weights=None,
    iterations: int = NNLS_ITERATIONS,
    regularization: float = NNLS_L2_REGULARIZATION,
) -> NnlsSolution:
    """
    Projected gradient descent on the weighted least-squares objective.

    Rows are rescaled (Jacobi preconditioning) and the problem is scaled so
    the first learning rate equals 1/L, which keeps the fixed learning-rate
    schedule stable for ppm-scale matrices. The best iterate seen is returned,
    with doses below FORMULA_MIN_GRAMS set to zero.
    """
    A = np.asarray(matrix, dtype=float)
    t = np.asarray(target, dtype=float)
    w = build_weights(t) if weights is None else np.asarray(weights, dtype=float)
    n = A.shape[0]

    if n == 0:
        achieved = np.zeros_like(t)
        return NnlsSolution(x=np.zeros(0), achieved=achieved, error=relative_error(achieved, t))

    row_norms = np.linalg.norm(A * w, axis=1)
    col_scale = np.divide(1.0, row_norms, out=np.zeros(n), where=row_norms > 0)
    spectral = np.linalg.norm((A * col_scale[:, None]) * w, 2)
    if spectral > 0:
        col_scale = col_scale / (np.sqrt(NNLS_LEARNING_RATES[0]) * spectral)
    B = A * col_scale[:, None]
    w2 = w ** 2

    u = np.zeros(n)
    best_u = u.copy()
    best_err = np.inf
    for iteration in range(iterations):
        residual = B.T @ u - t
        err = float(np.sum(w2 * residual ** 2))
        if err < best_err:
            best_err = err
            best_u = u.copy()
        grad = B @ (residual * w2) + regularization * col_scale ** 2 * u
        u = np.maximum(0.0, u - _learning_rate(iteration, iterations) * grad)

    residual = B.T @ u - t
    if float(np.sum(w2 * residual ** 2)) < best_err:
        best_u = u

    x = best_u * col_scale
    x[x < FORMULA_MIN_GRAMS] = 0.0
    achieved = A.T @ x
    active = [i for i in range(n) if x[i] > 0]
    return NnlsSolution(x=x, achieved=achieved, error=relative_error(achieved, t), active=active)


def _solve_subset(A: np.ndarray, t: np.ndarray, w: np.ndarray, indices: Sequence[int], iterations: int) -> NnlsSolution:
    indices = list(indices)
    sub = solve_nnls(A[indices], t, w, iterations=iterations)
    x = np.zeros(A.shape[0])
    x[indices] = sub.x
    active = [indices[i] for i in sub.active]
    return NnlsSolution(x=x, achieved=sub.achieved, error=sub.error, active=active)


def exhaustive_subset_search(
    matrix,
    target,
    weights=None,
    tolerance: float = FORMULA_TOLERANCE,
    max_subset: int = EXHAUSTIVE_MAX_SUBSET,
    iterations: int = NNLS_SUBSET_ITERATIONS,
) -> Optional[NnlsSolution]:
    """Smallest subset (fewest active, then lowest error) whose NNLS fit is within tolerance."""
    A = np.asarray(matrix, dtype=float)
    t = np.asarray(target, dtype=float)
    w = build_weights(t) if weights is None else np.asarray(weights, dtype=float)
    n = A.shape[0]

    best_within = None
    for size in range(1, min(max_subset, n) + 1):
        for combo in itertools.combinations(range(n), size):
            candidate = _solve_subset(A, t, w, combo, iterations)
            if not candidate.active or not within_tolerance(candidate.achieved, t, tolerance):
                continue
            if best_within is None or candidate.rank_key() < best_within.rank_key():
                best_within = candidate
        if best_within is not None:
            logger.debug(f"[NNLS] Exhaustive search found {len(best_within.active)} fertilizers at size {size}")
            break

    if best_within is not None:
        best_within.strategy = "nnls_exhaustive"
    return best_within


def prune_solution(
    matrix,
    target,
    base: NnlsSolution,
    weights=None,
    tolerance: float = FORMULA_TOLERANCE,
    iterations: int = NNLS_PRUNE_ITERATIONS,
) -> NnlsSolution:
    """
    Greedily drop active fertilizers while every targeted nutrient stays within
    tolerance, preferring fewer active fertilizers and then lower error.
    """
    A = np.asarray(matrix, dtype=float)
    t = np.asarray(target, dtype=float)
    w = build_weights(t) if weights is None else np.asarray(weights, dtype=float)

    current = base
    while len(current.active) > 1:
        best_candidate = None
        for idx in current.active:
            remaining = [i for i in current.active if i != idx]
            candidate = _solve_subset(A, t, w, remaining, iterations)
            if not candidate.active or not within_tolerance(candidate.achieved, t, tolerance):
                continue
            if best_candidate is None or candidate.rank_key() < best_candidate.rank_key():
                best_candidate = candidate
        if best_candidate is None:
            break
        logger.debug(f"[NNLS] Pruned to {len(best_candidate.active)} fertilizers")
        current = best_candidate
    return current


def solve_with_fallback_chain(
    matrix,
    target,
    weights=None,
    tolerance: float = FORMULA_TOLERANCE,
) -> NnlsSolution:
    """Exhaustive subset search, then NNLS + pruning, then the full candidate set."""
    A = np.asarray(matrix, dtype=float)
    t = np.asarray(target, dtype=float)
    w = build_weights(t) if weights is None else np.asarray(weights, dtype=float)

    def exhaustive() -> Optional[NnlsSolution]:
        if A.shape[0] > EXHAUSTIVE_MAX_CANDIDATES:
            return None
        return exhaustive_subset_search(A, t, w, tolerance)

    def greedy_prune() -> Optional[NnlsSolution]:
        base = solve_nnls(A, t, w, iterations=NNLS_ITERATIONS)
        if not base.active:
            return None
        pruned = prune_solution(A, t, base, w, tolerance)
        pruned.strategy = "nnls_pruned"
        return pruned

    def full_set() -> NnlsSolution:
        solution = solve_nnls(A, t, w, iterations=NNLS_ITERATIONS)
        solution.strategy = "nnls_full"
        return solution

    solution = first_success([exhaustive, greedy_prune, full_set])
    logger.info(f"[NNLS] {solution.strategy}: {len(solution.active)} fertilizers, error={solution.error:.6f}")
    return solution
