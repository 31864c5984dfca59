"""
Hydroponic formula optimizer.

Given a nutrient target (ratio or absolute ppm) and a candidate fertilizer
set, finds a small set of fertilizers and their doses that reproduce the
target. The primary strategy is a mixed-integer model solved through PuLP
(binary "used" indicators so the objective counts fertilizers). When no MILP
backend is available the NNLS fallback chain is used instead.

An optional target EC rescales the whole formula; an absolute Si target adds
an outer loop that re-solves with an adjusted Si ask, since Si is never
ratio-normalized and is easily starved by the solver.
"""
import logging
from dataclasses import dataclass, asdict, field
from typing import Dict, List, Optional, Any, Tuple, Iterable, Union

import pulp
from pydantic import TypeAdapter

from hydrodoser.schemas.hydro_schemas import (
    AbsoluteTarget,
    Basis,
    ECOptions,
    Fertilizer,
    NutrientTarget,
    OptimizerOptions,
    RatioTarget,
    SolverStrategy,
)
from hydrodoser.services.hydro_chemistry import P_TO_P2O5, K_TO_K2O
from hydrodoser.services.hydro_contributions import (
    calculate_ppm,
    empty_profile,
    milp_contribution_per_gram,
    scale_profile,
)
from hydrodoser.services.hydro_convergence import iterate_until
from hydrodoser.services.hydro_ec_estimator import estimate_ec_from_ppm
from hydrodoser.services.hydro_issues import make_issue
from hydrodoser.services.hydro_milp_backend import MilpBackend, MilpSolveError, get_default_backend
from hydrodoser.services.hydro_nnls_solver import solve_with_fallback_chain
from hydrodoser.services import hydro_rules as rules

logger = logging.getLogger(__name__)

_TARGET_ADAPTER = TypeAdapter(NutrientTarget)


@dataclass
class FormulaResult:
    formula: Dict[str, float]
    achieved: Dict[str, float]
    target_ratios: Dict[str, float]
    target_ppm: Dict[str, float]
    strategy: str
    ec_scaling: Optional[Dict[str, float]] = None
    within_tolerance: bool = True
    issues: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class _ScaledFormula:
    formula: Dict[str, float]
    achieved: Dict[str, float]
    scale: float
    ec: float


@dataclass
class _SiState:
    si_target: float
    current: _ScaledFormula
    best: _ScaledFormula
    best_error: float


def coerce_target(target: Union[RatioTarget, AbsoluteTarget, Dict[str, Any]]) -> Union[RatioTarget, AbsoluteTarget]:
    """Accept a target model or a plain dict (kind defaults to 'ratio')."""
    if isinstance(target, (RatioTarget, AbsoluteTarget)):
        return target
    data = dict(target)
    data.setdefault("kind", "ratio")
    return _TARGET_ADAPTER.validate_python(data)


def resolve_ppm_targets(
    target: Union[RatioTarget, AbsoluteTarget],
    basis: Basis = Basis.OXIDE,
    concentration_ppm: float = rules.DEFAULT_CONCENTRATION_PPM,
) -> Dict[str, float]:
    """
    Absolute ppm targets over N_total, P2O5, K2O, Ca, Mg, S and Si.

    Ratio targets are normalized to their smallest non-zero member among
    N..S and scaled to `concentration_ppm`. Si is always absolute ppm.
    With the elemental basis P and K are converted to P2O5 and K2O.
    """
    values = target.nutrient_values()

    if isinstance(target, RatioTarget):
        nonzero = [values[key] for key in rules.RATIO_NUTRIENTS if values[key] > 0]
        min_ratio = min(nonzero) if nonzero else 1.0
        ppm = {key: values[key] / min_ratio * concentration_ppm for key in rules.RATIO_NUTRIENTS}
    else:
        ppm = {key: values[key] for key in rules.RATIO_NUTRIENTS}

    if basis == Basis.ELEMENTAL:
        p2o5 = ppm["P"] * P_TO_P2O5
        k2o = ppm["K"] * K_TO_K2O
    else:
        p2o5 = ppm["P"]
        k2o = ppm["K"]

    return {
        "N_total": ppm["N"],
        "P2O5": p2o5,
        "K2O": k2o,
        "Ca": ppm["Ca"],
        "Mg": ppm["Mg"],
        "S": ppm["S"],
        "Si": values["Si"],
    }


def _priority_weight(fert: Fertilizer) -> float:
    if fert.id == rules.PEKACID_ID:
        return rules.PEKACID_PRIORITY_WEIGHT
    priority = fert.priority if fert.priority is not None else rules.DEFAULT_PRIORITY
    return priority / 10.0


def _slack_penalty(nutrient: str, target: float) -> float:
    if target <= 0:
        return rules.INCIDENTAL_SLACK_PENALTY
    if nutrient == "Si":
        return rules.SILICON_SLACK_PENALTY
    return rules.TARGETED_SLACK_PENALTY


def solve_milp(
    fertilizers: List[Fertilizer],
    targets: Dict[str, float],
    volume: float = 1.0,
    tolerance: float = rules.FORMULA_TOLERANCE,
    pekacid_max_limit_gL: float = 0.0,
    backend: Optional[MilpBackend] = None,
) -> Tuple[Dict[str, float], Dict[str, float]]:
    """
    Build and solve the mixed-integer model.

    Variables per fertilizer: dose x_i >= 0 and used flag y_i (binary) with
    x_i <= BIG_M * y_i. Per nutrient: slack_minus/slack_plus with

        sum(c_i * x_i) + slack_minus >= t * (1 - tol)     (only when t > 0)
        sum(c_i * x_i) - slack_plus  <= t * (1 + tol)     (ceiling 0 when t == 0)

    Objective: sum(priority_i * y_i) + sum(penalty_n * (slack_plus + slack_minus)).

    Returns:
        (formula, achieved) with doses below FORMULA_MIN_GRAMS dropped and
        achieved recomputed from the formula.

    Raises:
        MilpBackendUnavailableError: no solver can be created
        MilpSolveError: the solver did not reach an optimal solution
    """
    if not fertilizers:
        return {}, empty_profile()

    backend = backend or get_default_backend()
    problem = pulp.LpProblem("hydro_formula", pulp.LpMinimize)

    contributions = [milp_contribution_per_gram(fert, volume) for fert in fertilizers]
    x = [pulp.LpVariable(f"x_{i}", lowBound=0) for i in range(len(fertilizers))]
    y = [pulp.LpVariable(f"y_{i}", cat=pulp.LpBinary) for i in range(len(fertilizers))]
    slack_plus = {n: pulp.LpVariable(f"s_plus_{n}", lowBound=0) for n in rules.MILP_NUTRIENTS}
    slack_minus = {n: pulp.LpVariable(f"s_minus_{n}", lowBound=0) for n in rules.MILP_NUTRIENTS}

    objective = [_priority_weight(fert) * y[i] for i, fert in enumerate(fertilizers)]
    for nutrient in rules.MILP_NUTRIENTS:
        penalty = _slack_penalty(nutrient, targets.get(nutrient, 0.0))
        objective.append(penalty * (slack_plus[nutrient] + slack_minus[nutrient]))

    pekacid_index = next((i for i, f in enumerate(fertilizers) if f.id == rules.PEKACID_ID), None)
    fill_slack = None
    if pekacid_max_limit_gL > 0 and pekacid_index is not None:
        fill_slack = pulp.LpVariable("s_pekacid_fill", lowBound=0)
        objective.append(rules.PEKACID_FILL_PENALTY * fill_slack)

    problem += pulp.lpSum(objective), "total_cost"

    for i in range(len(fertilizers)):
        problem += x[i] <= rules.BIG_M * y[i], f"link_{i}"

    if fill_slack is not None:
        limit = pekacid_max_limit_gL * volume
        problem += x[pekacid_index] <= limit, "pekacid_max"
        problem += fill_slack + x[pekacid_index] >= limit, "pekacid_fill"

    for nutrient in rules.MILP_NUTRIENTS:
        target = targets.get(nutrient, 0.0)
        supplied = pulp.lpSum(
            contributions[i][nutrient] * x[i]
            for i in range(len(fertilizers))
            if contributions[i][nutrient]
        )
        if target > 0:
            problem += supplied + slack_minus[nutrient] >= target * (1 - tolerance), f"min_{nutrient}"
        upper = target * (1 + tolerance) if target > 0 else 0
        problem += supplied - slack_plus[nutrient] <= upper, f"max_{nutrient}"

    status = backend.solve(problem)
    if status != "Optimal":
        logger.warning(f"[MILP] Solver returned status '{status}'")
        raise MilpSolveError(status)

    formula = {}
    for i, fert in enumerate(fertilizers):
        grams = x[i].value() or 0.0
        if grams > rules.FORMULA_MIN_GRAMS:
            formula[fert.id] = grams

    lookup = {fert.id: fert for fert in fertilizers}
    achieved = calculate_ppm(formula, lookup, volume)
    logger.debug(f"[MILP] {len(formula)} fertilizers selected from {len(fertilizers)} candidates")
    return formula, achieved


def solve_nnls_formula(
    fertilizers: List[Fertilizer],
    targets: Dict[str, float],
    volume: float = 1.0,
    tolerance: float = rules.FORMULA_TOLERANCE,
) -> Tuple[Dict[str, float], Dict[str, float]]:
    """NNLS fallback chain over the same nutrients the MILP tracks."""
    if not fertilizers:
        return {}, empty_profile()

    contributions = [milp_contribution_per_gram(fert, volume) for fert in fertilizers]
    matrix = [[contrib[n] for n in rules.MILP_NUTRIENTS] for contrib in contributions]
    target_vector = [targets.get(n, 0.0) for n in rules.MILP_NUTRIENTS]

    solution = solve_with_fallback_chain(matrix, target_vector, tolerance=tolerance)
    formula = {fertilizers[i].id: float(solution.x[i]) for i in solution.active}

    lookup = {fert.id: fert for fert in fertilizers}
    return formula, calculate_ppm(formula, lookup, volume)


def _nnls_solver(options: OptimizerOptions, candidates: List[Fertilizer]):
    def solve(ppm_targets):
        return solve_nnls_formula(candidates, ppm_targets, volume=options.volume_l, tolerance=options.tolerance)
    return solve


def _select_solver(options: OptimizerOptions, candidates: List[Fertilizer], backend: Optional[MilpBackend]):
    """Resolve the strategy once and return (name, solve(ppm_targets) -> (formula, achieved))."""
    strategy = options.strategy
    backend = backend or get_default_backend()

    if strategy == SolverStrategy.AUTO:
        if backend.is_available():
            strategy = SolverStrategy.MILP
        else:
            logger.warning("[Optimizer] MILP backend unavailable, using NNLS fallback")
            strategy = SolverStrategy.NNLS

    if strategy == SolverStrategy.MILP:
        def solve(ppm_targets):
            return solve_milp(
                candidates,
                ppm_targets,
                volume=options.volume_l,
                tolerance=options.tolerance,
                pekacid_max_limit_gL=options.pekacid_max_limit_gL,
                backend=backend,
            )
        return "milp", solve

    return "nnls", _nnls_solver(options, candidates)


def check_formula_tolerance(
    achieved: Dict[str, float],
    ppm_targets: Dict[str, float],
    tolerance: float = rules.FORMULA_TOLERANCE,
    scale: float = 1.0,
    si_tolerance: Optional[float] = None,
) -> Dict[str, Dict[str, float]]:
    """
    Nutrients whose achieved ppm misses a positive target by more than `tolerance`.

    `scale` is the EC scaling factor applied after solving; it multiplies every
    target except Si, which stays absolute. Keys follow the solver's nutrient
    space (N_total, P2O5, K2O, Ca, Mg, S, Si).
    """
    misses = {}
    for nutrient in rules.MILP_NUTRIENTS:
        target = ppm_targets.get(nutrient, 0.0)
        if target <= 0:
            continue
        if nutrient == "Si":
            expected = target
            allowed = si_tolerance if si_tolerance is not None else tolerance
        else:
            expected = target * scale
            allowed = tolerance
        value = achieved.get(nutrient, 0.0)
        error = abs(value - expected) / expected
        if error > allowed + rules.TOLERANCE_CHECK_EPSILON:
            misses[nutrient] = {"target": expected, "achieved": value, "error": error}
    return misses


def _estimate_ec(achieved: Dict[str, float], ec_options: ECOptions) -> float:
    return estimate_ec_from_ppm(achieved, ec_options)["ec_mS_cm"]


def _scale_formula(formula: Dict[str, float], scale: float) -> Dict[str, float]:
    return {fid: grams * scale for fid, grams in formula.items() if grams * scale > rules.FORMULA_MIN_GRAMS}


def _scale_to_ec(
    formula: Dict[str, float],
    achieved: Dict[str, float],
    target_ec: float,
    ec_options: ECOptions,
) -> _ScaledFormula:
    """Scale a formula until its estimated EC is within 1% of target (at most 5 passes)."""
    start = _ScaledFormula(formula, achieved, 1.0, _estimate_ec(achieved, ec_options))
    if start.ec <= 0:
        return start

    def step(state: _ScaledFormula) -> _ScaledFormula:
        scale = state.scale * target_ec / state.ec
        scaled = scale_profile(achieved, scale)
        return _ScaledFormula(_scale_formula(formula, scale), scaled, scale, _estimate_ec(scaled, ec_options))

    outcome = iterate_until(
        lambda state: abs(state.ec - target_ec) / target_ec < rules.EC_SCALING_ACCEPTANCE,
        rules.EC_SCALING_MAX_ITERATIONS,
        step,
        start,
    )
    logger.debug(
        f"[Optimizer] EC scaling: factor={outcome.value.scale:.4f} ec={outcome.value.ec:.3f} "
        f"after {outcome.iterations} passes (converged={outcome.converged})"
    )
    return outcome.value


def _converge_silicon(
    solve,
    ppm_targets: Dict[str, float],
    base: _ScaledFormula,
    target_ec: float,
    ec_options: ECOptions,
) -> _ScaledFormula:
    """Re-solve with an adjusted Si ask until achieved Si is within 10%, keeping the best result."""
    target_si = ppm_targets["Si"]

    def si_error(candidate: _ScaledFormula) -> float:
        return abs(candidate.achieved.get("Si", 0.0) - target_si)

    def step(state: _SiState) -> _SiState:
        achieved_si = state.current.achieved.get("Si", 0.0)
        ratio = target_si / achieved_si if achieved_si > 0 else rules.SI_ADJUST_DEFAULT_RATIO
        si_ask = min(state.si_target * ratio, target_si * rules.SI_TARGET_CAP_FACTOR)
        formula, achieved = solve({**ppm_targets, "Si": si_ask})
        current = _scale_to_ec(formula, achieved, target_ec, ec_options)
        error = si_error(current)
        if error < state.best_error:
            return _SiState(si_ask, current, current, error)
        return _SiState(si_ask, current, state.best, state.best_error)

    outcome = iterate_until(
        lambda state: abs(state.current.achieved.get("Si", 0.0) - target_si) / target_si < rules.SI_ADJUST_ACCEPTANCE,
        rules.SI_ADJUST_MAX_ITERATIONS,
        step,
        _SiState(target_si, base, base, si_error(base)),
    )
    logger.debug(f"[Optimizer] Si loop: {outcome.iterations} re-solves, best error {outcome.value.best_error:.2f} ppm")
    return outcome.value.best


def optimize_formula(
    target: Union[RatioTarget, AbsoluteTarget, Dict[str, Any]],
    fertilizers: Iterable[Fertilizer],
    options: Optional[OptimizerOptions] = None,
    backend: Optional[MilpBackend] = None,
) -> FormulaResult:
    """
    Optimize a fertilizer formula for a nutrient target.

    Args:
        target: RatioTarget / AbsoluteTarget (or an equivalent dict)
        fertilizers: candidate fertilizers
        options: basis, volume, concentration basis, tolerance, target EC,
            acid dose limit and solving strategy
        backend: MILP solver handle (defaults to the process-wide backend)

    Returns:
        FormulaResult with grams per fertilizer for `volume_l` liters and the
        achieved ppm profile. within_tolerance is False (with a RATIO_MISMATCH
        issue) when the soft bounds left a targeted nutrient outside tolerance.
        An empty candidate set yields an empty formula.

    Raises:
        MilpBackendUnavailableError: strategy 'milp' without a working solver
        MilpSolveError: strategy 'milp' and the solver failed ('auto' falls back to NNLS)
    """
    options = options or OptimizerOptions()
    target = coerce_target(target)
    candidates = list(fertilizers)
    ppm_targets = resolve_ppm_targets(target, options.basis, options.concentration_ppm)
    target_ratios = target.nutrient_values()

    if not candidates:
        logger.info("[Optimizer] No candidate fertilizers, returning empty formula")
        return FormulaResult(
            {}, empty_profile(), target_ratios, ppm_targets, "none",
            within_tolerance=False,
            issues=[make_issue("error", "NO_FERTILIZERS", "No candidate fertilizers")],
        )

    strategy_name, solve = _select_solver(options, candidates, backend)
    try:
        formula, achieved = solve(ppm_targets)
    except MilpSolveError as e:
        if options.strategy != SolverStrategy.AUTO:
            raise
        logger.warning(f"[Optimizer] MILP solve failed ({e.status}), using NNLS fallback")
        strategy_name, solve = "nnls", _nnls_solver(options, candidates)
        formula, achieved = solve(ppm_targets)
    logger.info(f"[Optimizer] {strategy_name}: {len(formula)} fertilizers for {len(candidates)} candidates")

    ec_scaling = None
    scale = 1.0
    if options.target_ec and formula:
        original_ec = _estimate_ec(achieved, options.ec_options)
        scaled = _scale_to_ec(formula, achieved, options.target_ec, options.ec_options)
        if ppm_targets["Si"] > 0:
            scaled = _converge_silicon(solve, ppm_targets, scaled, options.target_ec, options.ec_options)

        lookup = {fert.id: fert for fert in candidates}
        formula = scaled.formula
        scale = scaled.scale
        achieved = calculate_ppm(formula, lookup, options.volume_l)
        ec_scaling = {
            "scale_factor": scaled.scale,
            "original_ec": original_ec,
            "target_ec": options.target_ec,
            "achieved_ec": _estimate_ec(achieved, options.ec_options),
        }

    si_tolerance = rules.SI_ADJUST_ACCEPTANCE if ec_scaling is not None else None
    misses = check_formula_tolerance(achieved, ppm_targets, options.tolerance, scale, si_tolerance)
    issues = []
    if misses:
        logger.info(f"[Optimizer] Best-effort formula, outside tolerance for {sorted(misses)}")
        issues.append(make_issue(
            "error", "RATIO_MISMATCH",
            f"Achieved nutrients outside {options.tolerance:.0%} of target: {', '.join(sorted(misses))}",
            misses,
        ))

    return FormulaResult(
        formula, achieved, target_ratios, ppm_targets, strategy_name, ec_scaling,
        within_tolerance=not misses,
        issues=issues,
    )
