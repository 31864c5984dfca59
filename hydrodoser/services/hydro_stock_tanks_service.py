"""
Hydroponic Stock Tanks Service (Progressive-K).

Plans a shared set of 2-4 concentrated stock tanks that serve several targets
(different ratios and EC) by varying only the per-tank dosing volumes.

Mode B (plan_stock_solutions):
  1. Pick a representative target (median N:P) and optimize a base formula.
  2. Split the formula into tanks by compatibility class
     (calcium -> A, phosphate -> B, K-dominant -> C, silicate/Mg -> D).
  3. Cap the stock concentration by solubility.
  4. For every target, search tank dosing ratios for the nutrient ratio and
     then scale uniformly to the target EC.
  If any target fails, retry with one more tank (K = 2, 3, 4).

Mode A (plan_stock_solutions_per_target): one independent 2-tank recipe per
target with a fixed dosing of 1000 / concentration mL/L per tank.
"""
import itertools
import logging
import math
from typing import Dict, Any, List, Optional, Iterable, Tuple, Union

from hydrodoser.schemas.hydro_schemas import (
    Basis,
    CompatibilityTag,
    ECOptions,
    Fertilizer,
    OptimizerOptions,
    RatioTarget,
    StockPlanOptions,
    StockTarget,
)
from hydrodoser.services.hydro_catalog import FertilizerCatalog, get_default_catalog
from hydrodoser.services.hydro_chemistry import K_TO_K2O, P_TO_P2O5
from hydrodoser.services.hydro_contributions import ELEMENTAL_KEYS, elemental_contribution_per_gram
from hydrodoser.services.hydro_convergence import iterate_until
from hydrodoser.services.hydro_ec_estimator import estimate_ec_from_ppm
from hydrodoser.services.hydro_formula_optimizer import optimize_formula
from hydrodoser.services.hydro_ion_balance import calculate_ion_balance
from hydrodoser.services.hydro_issues import error_issues, make_issue, warning_issues
from hydrodoser.services.hydro_milp_backend import MilpBackend
from hydrodoser.services.hydro_ratios import has_incompatible_fertilizers
from hydrodoser.services import hydro_rules as rules

logger = logging.getLogger(__name__)

TANK_IDS = ('A', 'B', 'C', 'D')
RATIO_KEYS = rules.RATIO_NUTRIENTS

N_KEYS = ('N_total', 'N_NO3', 'N_NH4', 'N_Urea')
P_KEYS = ('P2O5', 'P')
K_KEYS = ('K2O', 'K')


def _ratio_values(ratio: Union[RatioTarget, Dict[str, float]]) -> Dict[str, float]:
    if isinstance(ratio, RatioTarget):
        values = ratio.nutrient_values()
    else:
        values = dict(ratio)
    return {key: float(values.get(key, 0) or 0) for key in RATIO_KEYS}


def _k2o_pct(fert: Fertilizer) -> float:
    return fert.pct.get('K2O', 0) or fert.pct.get('K', 0) * K_TO_K2O


def _p2o5_pct(fert: Fertilizer) -> float:
    return fert.pct.get('P2O5', 0) or fert.pct.get('P', 0) * P_TO_P2O5


# ==================== TANK ASSIGNMENT ====================

def assign_to_tanks(
    formula: Dict[str, float],
    num_tanks: int = 2,
    separate_mg: bool = False,
    catalog: Optional[FertilizerCatalog] = None,
) -> Dict[str, Dict[str, float]]:
    """
    Split a formula into tanks by compatibility class.

    calcium -> A; phosphate -> B; K-dominant sulfates and neutrals -> C when
    K >= 3 (else B); silicate -> highest tank; everything else -> B. With
    separate_mg and K = 4, pure magnesium sources go to D.
    A calcium source never shares a tank with a sulfate, phosphate or
    silicate source.
    """
    catalog = catalog if catalog is not None else get_default_catalog()
    tanks: Dict[str, Dict[str, float]] = {tank_id: {} for tank_id in TANK_IDS[:max(2, min(num_tanks, 4))]}

    for fert_id, grams in formula.items():
        if not grams or grams <= 0:
            continue

        tag = catalog.get_compatibility_tag(fert_id)
        fert = catalog.get(fert_id)
        significant_k = fert is not None and _k2o_pct(fert) > rules.SIGNIFICANT_K2O_PCT
        has_p = fert is not None and _p2o5_pct(fert) > rules.SIGNIFICANT_P2O5_PCT
        has_mg = fert is not None and (fert.pct.get('Mg', 0) > 0 or fert.pct.get('MgO', 0) > 0)

        if (separate_mg and num_tanks >= 4 and tag != CompatibilityTag.CALCIUM
                and has_mg and not has_p and not significant_k):
            tanks['D'][fert_id] = grams
            continue

        if tag == CompatibilityTag.CALCIUM:
            tanks['A'][fert_id] = grams
        elif tag == CompatibilityTag.PHOSPHATE:
            tanks['B'][fert_id] = grams
        elif tag == CompatibilityTag.SILICATE:
            if num_tanks >= 4:
                tanks['D'][fert_id] = grams
            elif num_tanks >= 3:
                tanks['C'][fert_id] = grams
            else:
                tanks['B'][fert_id] = grams
        elif num_tanks >= 3 and significant_k and not has_p:
            # sulfate or neutral K source, e.g. K2SO4 or KNO3
            tanks['C'][fert_id] = grams
        else:
            tanks['B'][fert_id] = grams

    return tanks


def check_tank_feasibility(tank_formula: Dict[str, float], catalog: Optional[FertilizerCatalog] = None) -> Dict[str, Any]:
    """Solubility check for one tank ({fert_id: g/L of stock})."""
    catalog = catalog if catalog is not None else get_default_catalog()
    issues = []

    for fert_id, grams_l in tank_formula.items():
        if not grams_l or grams_l <= 0:
            continue
        solubility = catalog.get_solubility(fert_id)
        pct_used = grams_l / solubility * 100
        fert = catalog.get(fert_id)
        name = fert.name if fert is not None and fert.name else fert_id
        details = {'fertilizer': fert_id, 'required_gL': grams_l, 'max_gL': solubility, 'pct_used': pct_used}

        if grams_l > solubility:
            issues.append(make_issue(
                'error', 'SOLUBILITY_EXCEEDED',
                f"{name} requires {grams_l:.1f} g/L but max solubility is {solubility:g} g/L",
                details,
            ))
        elif pct_used > rules.SOLUBILITY_WARNING_PCT:
            issues.append(make_issue(
                'warning', 'SOLUBILITY_NEAR_LIMIT',
                f"{name} at {pct_used:.0f}% of solubility limit",
                details,
            ))

    return {'feasible': not error_issues(issues), 'issues': issues}


def check_tank_compatibility(
    tank_id: str,
    tank_formula: Dict[str, float],
    catalog: Optional[FertilizerCatalog] = None,
) -> List[Dict[str, Any]]:
    """
    Composition check for one tank. Tags route calcium away from phosphate
    and sulfate, but some products carry calcium under another tag (SSP,
    CaO-bearing NPKs), so the tank contents are inspected directly.
    """
    if not has_incompatible_fertilizers(tank_formula, catalog):
        return []
    return [make_issue(
        'warning', 'TANK_INCOMPATIBILITY',
        f"Tank {tank_id} mixes calcium with sulfate, phosphate or silicate; precipitation risk",
        {'tank': tank_id, 'fertilizers': sorted(fid for fid, grams in tank_formula.items() if grams and grams > 0)},
    )]


# ==================== DOSING ====================

def tank_nutrients_per_ml(tank_formula: Dict[str, float], catalog: FertilizerCatalog) -> Dict[str, float]:
    """Elemental ppm added to 1 L of final solution by 1 mL of this stock."""
    per_ml = {key: 0.0 for key in ELEMENTAL_KEYS}
    for fert_id, stock_gl in tank_formula.items():
        if not stock_gl:
            continue
        fert = catalog.get(fert_id)
        if fert is None:
            continue
        for key, ppm in elemental_contribution_per_gram(fert).items():
            per_ml[key] += ppm * stock_gl / 1000
    return per_ml


def _combine(per_ml: Dict[str, Dict[str, float]], dosing: Dict[str, float]) -> Dict[str, float]:
    achieved = {key: 0.0 for key in ELEMENTAL_KEYS}
    for tank_id, dose_ml in dosing.items():
        if dose_ml <= 0 or tank_id not in per_ml:
            continue
        for key, value in per_ml[tank_id].items():
            achieved[key] += value * dose_ml
    return achieved


def calculate_achieved_ppm(
    tanks: Dict[str, Dict[str, float]],
    dosing: Dict[str, float],
    catalog: Optional[FertilizerCatalog] = None,
) -> Dict[str, float]:
    """
    Elemental ppm in the final solution.

    Args:
        tanks: {tank_id: {fert_id: g/L of stock}}
        dosing: {tank_id: mL of stock per L of final solution}
    """
    catalog = catalog if catalog is not None else get_default_catalog()
    per_ml = {tank_id: tank_nutrients_per_ml(formula, catalog) for tank_id, formula in tanks.items()}
    return _combine(per_ml, dosing)


def check_ratio_match(
    achieved: Dict[str, float],
    target_ratio: Union[RatioTarget, Dict[str, float]],
    tolerance: float = 0.05,
) -> Dict[str, Any]:
    """Compare achieved ppm against a target ratio, both normalized to their minimum."""
    ratio = _ratio_values(target_ratio)
    errors: Dict[str, Dict[str, float]] = {}
    target_keys = [key for key in RATIO_KEYS if ratio[key] > 0]
    if not target_keys:
        return {'matches': True, 'errors': errors}

    target_min = min(ratio[key] for key in target_keys)
    achieved_min = min((achieved.get(key, 0) or rules.MISSING_RATIO_VALUE * 0.1) for key in target_keys)

    for key in target_keys:
        target_norm = ratio[key] / target_min
        achieved_norm = (achieved.get(key, 0) or 0) / achieved_min
        rel_error = abs(achieved_norm - target_norm) / target_norm
        if rel_error > tolerance:
            errors[key] = {'target': target_norm, 'achieved': achieved_norm, 'error': rel_error}

    return {'matches': not errors, 'errors': errors}


def _ratio_error(achieved: Dict[str, float], ratio: Dict[str, float], target_keys: List[str], target_min: float) -> float:
    present = [achieved[key] for key in target_keys if achieved.get(key, 0) > 0]
    if not present:
        return math.inf
    achieved_min = min(present)
    error = 0.0
    for key in target_keys:
        target_norm = ratio[key] / target_min
        achieved_norm = achieved.get(key, 0) / achieved_min
        error += ((achieved_norm - target_norm) / target_norm) ** 2
    return error


def _dosing_grid(tank_ids: List[str]):
    """Candidate dosings of DOSING_GRID_TOTAL_ML split by geometric ratio steps."""
    if len(tank_ids) == 1:
        yield {tank_ids[0]: rules.DOSING_GRID_TOTAL_ML}
        return
    if len(tank_ids) == 2:
        steps = rules.TWO_TANK_RATIO_STEPS
    elif len(tank_ids) == 3:
        steps = rules.THREE_TANK_RATIO_STEPS
    else:
        steps = rules.FOUR_TANK_RATIO_STEPS

    for multipliers in itertools.product(steps, repeat=len(tank_ids) - 1):
        total = sum(multipliers) + 1
        dosing = {tank_id: rules.DOSING_GRID_TOTAL_ML * m / total for tank_id, m in zip(tank_ids, multipliers)}
        dosing[tank_ids[-1]] = rules.DOSING_GRID_TOTAL_ML / total
        yield dosing


def _search_dosing_ratio(
    tank_ids: List[str],
    per_ml: Dict[str, Dict[str, float]],
    ratio: Dict[str, float],
) -> Tuple[Dict[str, float], float]:
    """Phase 1: grid search over tank dosing ratios, then coordinate refinement."""
    target_keys = [key for key in RATIO_KEYS if ratio[key] > 0]
    target_min = min((ratio[key] for key in target_keys), default=1.0)

    def score(dosing: Dict[str, float]) -> float:
        if not target_keys:
            return 0.0
        return _ratio_error(_combine(per_ml, dosing), ratio, target_keys, target_min)

    best_dosing: Dict[str, float] = {}
    best_error = math.inf
    for dosing in _dosing_grid(tank_ids):
        error = score(dosing)
        if error < best_error or not best_dosing:
            best_error = error
            best_dosing = dict(dosing)

    if len(tank_ids) >= 2 and best_error > rules.REFINEMENT_THRESHOLD:
        improved = True
        rounds = 0
        while improved and rounds < rules.REFINEMENT_MAX_ROUNDS:
            improved = False
            rounds += 1
            for tank_id in tank_ids:
                base_dose = best_dosing.get(tank_id, 0)
                for delta in rules.REFINEMENT_DELTAS:
                    trial = dict(best_dosing)
                    trial[tank_id] = max(rules.MIN_REFINED_DOSE_ML, base_dose * (1 + delta))
                    error = score(trial)
                    if error < best_error:
                        best_error = error
                        best_dosing = trial
                        improved = True

    return best_dosing, best_error


def solve_dosing(
    tanks: Dict[str, Dict[str, float]],
    ratio: Union[RatioTarget, Dict[str, float]],
    target_ec: float,
    baseline_ec: float = 0.0,
    max_dosing: float = rules.DEFAULT_MAX_DOSING_ML,
    tolerance: float = rules.RATIO_MATCH_TOLERANCE,
    catalog: Optional[FertilizerCatalog] = None,
    ec_options: Optional[ECOptions] = None,
) -> Dict[str, Any]:
    """
    Per-target dosing for fixed stock compositions.

    Phase 1 searches the tank dosing ratio that best matches the nutrient
    ratio, ignoring EC. Phase 2 scales every tank by the same factor so the
    predicted EC hits target_ec - baseline_ec without disturbing the ratio.

    Args:
        tanks: {tank_id: {fert_id: g/L of stock}}
        ratio: target nutrient ratio
        target_ec: final EC in mS/cm, baseline included
        baseline_ec: EC of the source water

    Returns:
        Dict with dosing (mL/L per tank), achieved ppm, predicted_ec,
        feasible and issues.
    """
    catalog = catalog if catalog is not None else get_default_catalog()
    ratio_values = _ratio_values(ratio)
    empty = {key: 0.0 for key in ELEMENTAL_KEYS}

    tank_ids = [tank_id for tank_id, formula in tanks.items() if formula]
    if not tank_ids:
        issue = make_issue('error', 'NO_FERTILIZERS', 'No fertilizers in tanks')
        return {'dosing': {}, 'achieved': empty, 'predicted_ec': baseline_ec, 'feasible': False, 'issues': [issue]}

    effective_ec = target_ec - baseline_ec
    if effective_ec <= 0:
        issue = make_issue(
            'error', 'EC_UNACHIEVABLE',
            f"Target EC {target_ec} is below baseline {baseline_ec}",
            {'target': target_ec, 'baseline': baseline_ec},
        )
        return {'dosing': {}, 'achieved': empty, 'predicted_ec': baseline_ec, 'feasible': False, 'issues': [issue]}

    per_ml = {tank_id: tank_nutrients_per_ml(tanks[tank_id], catalog) for tank_id in tank_ids}
    dosing, ratio_error = _search_dosing_ratio(tank_ids, per_ml, ratio_values)
    logger.debug(f"[StockPlan] Ratio search error={ratio_error:.5f} dosing={dosing}")

    def evaluate(candidate: Dict[str, float]) -> Tuple[Dict[str, float], float]:
        candidate_achieved = _combine(per_ml, candidate)
        return candidate, estimate_ec_from_ppm(candidate_achieved, ec_options)['ec_mS_cm']

    def rescale(state: Tuple[Dict[str, float], float]) -> Tuple[Dict[str, float], float]:
        current, ec = state
        return evaluate({tank_id: dose * effective_ec / ec for tank_id, dose in current.items()})

    # uniform scaling keeps the ratio; repeated because the ionic strength correction is sub-linear
    state = evaluate(dosing)
    if state[1] > 0:
        state = iterate_until(
            lambda s: abs(s[1] - effective_ec) / effective_ec < rules.EC_SCALING_ACCEPTANCE,
            rules.EC_SCALING_MAX_ITERATIONS,
            rescale,
            state,
        ).value
    dosing, current_ec = state
    achieved = _combine(per_ml, dosing)

    predicted_ec = current_ec + baseline_ec
    issues = []

    total_dosing = sum(dosing.values())
    if total_dosing > max_dosing:
        issues.append(make_issue(
            'error', 'DOSING_EXCEEDS_MAX',
            f"Total dosing {total_dosing:.1f} mL/L exceeds max {max_dosing:g} mL/L",
            {'required': total_dosing, 'max': max_dosing},
        ))
    elif total_dosing > max_dosing * rules.HIGH_DOSING_FRACTION:
        issues.append(make_issue(
            'warning', 'HIGH_DOSING_VOLUME',
            f"Total dosing {total_dosing:.1f} mL/L is high",
            {'required': total_dosing, 'max': max_dosing},
        ))

    ratio_check = check_ratio_match(achieved, ratio_values, tolerance)
    if not ratio_check['matches']:
        issues.append(make_issue(
            'error', 'RATIO_MISMATCH',
            'Achieved ratio does not match target within tolerance',
            ratio_check['errors'],
        ))

    ec_error = abs(predicted_ec - target_ec) / target_ec
    if ec_error > rules.EC_MISMATCH_TOLERANCE:
        issues.append(make_issue(
            'warning', 'EC_MISMATCH',
            f"Predicted EC {predicted_ec:.2f} differs from target {target_ec:.2f}",
            {'predicted': predicted_ec, 'target': target_ec, 'error': ec_error},
        ))

    return {
        'dosing': dosing,
        'achieved': achieved,
        'predicted_ec': predicted_ec,
        'feasible': not error_issues(issues),
        'issues': issues,
    }


# ==================== PLANNING ====================

def _validate_request(
    targets: Iterable[Union[StockTarget, Dict[str, Any]]],
    available_fertilizers: Iterable[str],
    catalog: FertilizerCatalog,
) -> Tuple[List[StockTarget], List[Fertilizer], List[Dict[str, Any]]]:
    targets = [t if isinstance(t, StockTarget) else StockTarget.model_validate(t) for t in (targets or [])]
    if not targets:
        return [], [], [make_issue('error', 'NO_TARGETS', 'No targets specified')]

    fert_ids = list(available_fertilizers or [])
    if not fert_ids:
        return targets, [], [make_issue('error', 'NO_FERTILIZERS', 'No fertilizers available')]

    fertilizers = catalog.resolve_ids(fert_ids)
    if not fertilizers:
        return targets, [], [make_issue('error', 'NO_VALID_FERTILIZERS', 'No valid fertilizers found')]

    return targets, fertilizers, []


def _spread(values: List[float]) -> float:
    return max(values) / min(values)


def _target_np(target: StockTarget) -> float:
    return (target.ratio.N or 0) / (target.ratio.P or rules.MISSING_RATIO_VALUE)


def _representative_target(targets: List[StockTarget]) -> StockTarget:
    """Median target by N:P (upper median for an even count)."""
    ranked = sorted(targets, key=_target_np)
    return ranked[len(ranked) // 2]


def _variation_flags(targets: List[StockTarget]) -> Dict[str, bool]:
    flags = {'np': False, 'pk': False, 'pmg': False}
    if len(targets) < 2:
        return flags

    missing = rules.MISSING_RATIO_VALUE
    np_ratios = [(t.ratio.N or missing) / (t.ratio.P or missing) for t in targets]
    pk_ratios = [(t.ratio.K or missing) / (t.ratio.P or missing) for t in targets]
    pmg_ratios = [(t.ratio.P or missing) / (t.ratio.Mg or missing) for t in targets]

    flags['np'] = _spread(np_ratios) > rules.NP_VARIATION_LIMIT
    flags['pk'] = _spread(pk_ratios) > rules.PK_VARIATION_LIMIT
    flags['pmg'] = _spread(pmg_ratios) > rules.PMG_VARIATION_LIMIT
    return flags


def _has_significant(fert: Fertilizer, keys: Tuple[str, ...]) -> bool:
    return any(fert.pct.get(key, 0) > rules.SIGNIFICANT_PCT for key in keys)


def _has_any(fert: Fertilizer, keys: Tuple[str, ...]) -> bool:
    return any(fert.pct.get(key, 0) > 0 for key in keys)


def _filter_candidates(fertilizers: List[Fertilizer], flags: Dict[str, bool]) -> List[Fertilizer]:
    """
    Drop fertilizers that couple nutrients whose ratio varies across targets
    (N+P when N:P varies, P+K when P:K varies). Falls back to the full list
    when fewer than 3 remain or a needed nutrient disappears.
    """
    filtered = fertilizers
    if flags['np']:
        filtered = [f for f in filtered if not (_has_significant(f, N_KEYS) and _has_significant(f, P_KEYS))]
    if flags['pk']:
        filtered = [f for f in filtered if not (_has_significant(f, P_KEYS) and _has_significant(f, K_KEYS))]

    missing_n = flags['np'] and not any(_has_any(f, N_KEYS) for f in filtered)
    missing_p = (flags['np'] or flags['pk']) and not any(_has_any(f, P_KEYS) for f in filtered)
    missing_k = flags['pk'] and not any(_has_any(f, K_KEYS) for f in filtered)

    if len(filtered) >= rules.MIN_FILTERED_CANDIDATES and not (missing_n or missing_p or missing_k):
        return filtered
    return fertilizers


def _deprioritize_tank_b_nitrogen(fertilizers: List[Fertilizer], lowest_np: float) -> List[Fertilizer]:
    """With P-heavy targets, make non-calcium N sources expensive so N comes from tank A."""
    if lowest_np >= rules.LOW_NP_THRESHOLD:
        return fertilizers

    adjusted = []
    for fert in fertilizers:
        has_n = _has_any(fert, N_KEYS)
        has_ca = fert.pct.get('Ca', 0) > 0 or fert.pct.get('CaO', 0) > 0
        if has_n and not has_ca:
            priority = fert.priority if fert.priority is not None else rules.DEFAULT_PRIORITY
            fert = fert.model_copy(update={'priority': max(priority, rules.DEPRIORITIZED_N_PRIORITY)})
        adjusted.append(fert)
    return adjusted


def _tank_labels(tank_id: str, mg_separated: bool) -> Tuple[str, str]:
    if tank_id == 'A':
        return 'Calcium Tank', 'Calcium-bearing fertilizers (isolated from phosphate/sulfate)'
    if tank_id == 'B':
        if mg_separated:
            return 'Phosphate Tank', 'Phosphate sources (separated for P:Mg control)'
        return 'Phosphate + Mg', 'Phosphate sources and magnesium sulfate'
    if tank_id == 'C':
        return 'Potassium', 'Potassium sulfate and K-dominant fertilizers (allows independent P:K control)'
    if mg_separated:
        return 'Magnesium Tank', 'Magnesium sources (separated for P:Mg control)'
    return 'Silicate/Specialty', 'Silicate and specialty fertilizers'


def _safe_concentration(assignment: Dict[str, Dict[str, float]], requested: float, catalog: FertilizerCatalog) -> int:
    """Largest stock strength keeping every fertilizer at <= 80% of its solubility."""
    max_safe = requested
    for tank_formula in assignment.values():
        for fert_id, grams_per_l in tank_formula.items():
            if not grams_per_l or grams_per_l <= 0:
                continue
            max_safe = min(max_safe, catalog.get_solubility(fert_id) * rules.SOLUBILITY_SAFETY_FACTOR / grams_per_l)
    return int(min(requested, math.floor(max_safe)))


def _failure(num_tanks: int, errors: List[Dict[str, Any]], warnings: Optional[List[Dict[str, Any]]] = None,
             tanks: Optional[Dict[str, Any]] = None, dosing: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    return {
        'success': False,
        'tanks': tanks or {},
        'dosing': dosing or [],
        'errors': errors,
        'warnings': warnings or [],
        'meta': {'mode': 'B', 'progressive_k': num_tanks},
    }


def _try_with_k_tanks(
    num_tanks: int,
    targets: List[StockTarget],
    fertilizers: List[Fertilizer],
    options: StockPlanOptions,
    catalog: FertilizerCatalog,
    backend: Optional[MilpBackend],
) -> Dict[str, Any]:
    base_target = _representative_target(targets)
    lowest_np = min(_target_np(t) for t in targets)
    flags = _variation_flags(targets)
    mg_separated = flags['pmg'] and num_tanks >= 4

    candidates = _filter_candidates(fertilizers, flags) if num_tanks >= 3 else fertilizers
    candidates = _deprioritize_tank_b_nitrogen(candidates, lowest_np)

    optim = optimize_formula(
        base_target.ratio,
        candidates,
        OptimizerOptions(
            basis=Basis.ELEMENTAL,
            volume_l=1.0,
            concentration_ppm=rules.PLANNER_CONCENTRATION_PPM,
            strategy=options.solver_strategy,
            ec_options=options.ec_options,
        ),
        backend=backend,
    )
    if not optim.formula:
        return _failure(num_tanks, [make_issue(
            'error', 'OPTIMIZATION_FAILED', 'Could not find fertilizer formula for target ratio',
        )])

    assignment = assign_to_tanks(optim.formula, num_tanks, separate_mg=flags['pmg'], catalog=catalog)
    requested = options.stock_concentration
    concentration = _safe_concentration(assignment, requested, catalog)
    if concentration < rules.MIN_PRACTICAL_CONCENTRATION:
        return _failure(num_tanks, [make_issue(
            'error', 'CONCENTRATION_TOO_LOW',
            f"Required stock concentration ({concentration}x) is too low due to solubility limits",
            {'requested': requested, 'effective': concentration},
        )])

    issues: List[Dict[str, Any]] = []
    tanks: Dict[str, Dict[str, Any]] = {}
    stock_formulas: Dict[str, Dict[str, float]] = {}
    for tank_id, tank_formula in assignment.items():
        if not tank_formula:
            continue
        name, description = _tank_labels(tank_id, mg_separated)
        stock = {fert_id: grams * concentration for fert_id, grams in tank_formula.items()}
        stock_formulas[tank_id] = stock
        tanks[tank_id] = {
            'id': tank_id,
            'name': name,
            'description': description,
            'fertilizers': {
                fert_id: {
                    'grams_per_L': stock_gl,
                    'grams_total': stock_gl * options.stock_tank_volume_l,
                    'solubility_pct': stock_gl / catalog.get_solubility(fert_id) * 100,
                }
                for fert_id, stock_gl in stock.items()
            },
            'total_solids_gL': sum(stock.values()),
            'nutrients_per_mL': tank_nutrients_per_ml(stock, catalog),
        }
        issues.extend(check_tank_feasibility(stock, catalog)['issues'])
        issues.extend(check_tank_compatibility(tank_id, stock, catalog))

    if concentration < requested:
        issues.append(make_issue(
            'warning', 'CONCENTRATION_REDUCED',
            f"Stock concentration reduced from {requested:g}x to {concentration}x due to solubility limits",
            {'requested': requested, 'effective': concentration},
        ))

    if error_issues(issues):
        return _failure(num_tanks, error_issues(issues), warning_issues(issues), tanks)

    instructions = []
    for target in targets:
        baseline = target.baseline_ec if target.baseline_ec is not None else options.baseline_ec
        result = solve_dosing(
            stock_formulas,
            target.ratio,
            target.target_ec,
            baseline_ec=baseline,
            max_dosing=target.max_dosing_ml,
            tolerance=options.ratio_tolerance,
            catalog=catalog,
            ec_options=options.ec_options,
        )

        final_doses: Dict[str, float] = {}
        for tank_id, ml_per_l in result['dosing'].items():
            for fert_id, stock_gl in stock_formulas[tank_id].items():
                final_doses[fert_id] = final_doses.get(fert_id, 0.0) + stock_gl * ml_per_l / 1000
        balance = calculate_ion_balance(final_doses, 1.0, catalog=catalog)

        instructions.append({
            'target_id': target.id,
            'target_ec': target.target_ec,
            'tanks': {
                tank_id: {'mL_per_L': ml_per_l, 'mL_total': ml_per_l * target.final_liters}
                for tank_id, ml_per_l in result['dosing'].items()
            },
            'total_dosing_mL_per_L': sum(result['dosing'].values()),
            'predicted': {
                'nutrients': result['achieved'],
                'ratio': _ratio_values(target.ratio),
                'ec': result['predicted_ec'],
                'ion_balance': {
                    'cations': balance['total_cations'],
                    'anions': balance['total_anions'],
                    'imbalance': balance['imbalance'],
                },
            },
            'warnings': result['issues'],
        })
        issues.extend(result['issues'])

    if error_issues(issues):
        return _failure(num_tanks, error_issues(issues), warning_issues(issues), tanks, instructions)

    return {
        'success': True,
        'tanks': tanks,
        'dosing': instructions,
        'warnings': warning_issues(issues),
        'errors': [],
        'meta': {
            'concentration_factor': concentration,
            'requested_concentration': requested,
            'tank_volume_l': options.stock_tank_volume_l,
            'baseline_ec': options.baseline_ec,
            'mode': 'B',
            'num_tanks': len(tanks),
            'progressive_k': num_tanks,
            'base_target_id': base_target.id,
        },
    }


def plan_stock_solutions(
    targets: Iterable[Union[StockTarget, Dict[str, Any]]],
    available_fertilizers: Iterable[str],
    options: Optional[StockPlanOptions] = None,
    catalog: Optional[FertilizerCatalog] = None,
    backend: Optional[MilpBackend] = None,
) -> Dict[str, Any]:
    """
    Shared stock tanks for several targets (Mode B, Progressive-K).

    Tries K = 2, 3, ... max_tanks tanks and returns the first plan where every
    target is feasible; otherwise the last attempt's failure, with an
    INFEASIBLE error appended.

    Args:
        targets: StockTarget models or dicts ({id, ratio, target_ec, ...})
        available_fertilizers: fertilizer ids; unknown ids are ignored
        options: stock strength, tank volume, baseline EC, ratio tolerance
        catalog: fertilizer catalog (defaults to the packaged one)
        backend: MILP solver handle passed through to the optimizer

    Returns:
        Dict with success, tanks, dosing (one instruction per target),
        warnings, errors and meta.
    """
    options = options or StockPlanOptions()
    catalog = catalog if catalog is not None else get_default_catalog()

    targets, fertilizers, errors = _validate_request(targets, available_fertilizers, catalog)
    if errors:
        return {'success': False, 'errors': errors, 'warnings': []}

    def attempt(num_tanks: int) -> Dict[str, Any]:
        result = _try_with_k_tanks(num_tanks, targets, fertilizers, options, catalog, backend)
        codes = ', '.join(sorted({e['code'] for e in result['errors']}))
        logger.info(f"[StockPlan] K={num_tanks}: {'feasible' if result['success'] else 'infeasible (' + codes + ')'}")
        return result

    outcome = iterate_until(
        lambda result: result['success'],
        options.max_tanks - rules.MIN_TANKS,
        lambda result: attempt(result['meta']['progressive_k'] + 1),
        attempt(rules.MIN_TANKS),
    )

    result = outcome.value
    if not result['success']:
        result['errors'] = result['errors'] + [make_issue(
            'error', 'INFEASIBLE',
            f"Could not find feasible stock solution with up to {options.max_tanks} tanks",
        )]
    return result


def plan_stock_solutions_per_target(
    targets: Iterable[Union[StockTarget, Dict[str, Any]]],
    available_fertilizers: Iterable[str],
    options: Optional[StockPlanOptions] = None,
    catalog: Optional[FertilizerCatalog] = None,
    backend: Optional[MilpBackend] = None,
) -> Dict[str, Any]:
    """
    Independent 2-tank recipe per target (Mode A).

    Each target is optimized with its own EC; every tank is dosed at
    1000 / stock_concentration mL per liter, which restores the optimized
    g/L in the final solution.
    """
    options = options or StockPlanOptions()
    catalog = catalog if catalog is not None else get_default_catalog()

    targets, fertilizers, errors = _validate_request(targets, available_fertilizers, catalog)
    if errors:
        return {'success': False, 'mode': 'A', 'plans': [], 'errors': errors, 'warnings': []}

    concentration = options.stock_concentration
    plans = []
    all_issues: List[Dict[str, Any]] = []

    for target in targets:
        baseline = target.baseline_ec if target.baseline_ec is not None else options.baseline_ec
        effective_ec = target.target_ec - baseline
        if effective_ec <= 0:
            issue = make_issue(
                'error', 'EC_UNACHIEVABLE',
                f"Target EC {target.target_ec} is below baseline {baseline}",
                {'target_id': target.id, 'target': target.target_ec, 'baseline': baseline},
            )
            plans.append({'target_id': target.id, 'tanks': {}, 'dosing': {}, 'issues': [issue]})
            all_issues.append(issue)
            continue

        optim = optimize_formula(
            target.ratio,
            fertilizers,
            OptimizerOptions(
                basis=Basis.ELEMENTAL,
                volume_l=1.0,
                concentration_ppm=effective_ec * 50,
                target_ec=effective_ec,
                strategy=options.solver_strategy,
                ec_options=options.ec_options,
            ),
            backend=backend,
        )

        issues = []
        if not optim.formula:
            issues.append(make_issue(
                'error', 'OPTIMIZATION_FAILED', 'Could not find fertilizer formula for target ratio',
                {'target_id': target.id},
            ))
        elif not optim.within_tolerance:
            # fixed dosing cannot correct the formula, so the miss is reported as-is
            for issue in optim.issues:
                issues.append(make_issue(
                    'warning', 'FORMULA_OUTSIDE_TOLERANCE', issue['message'],
                    {'target_id': target.id, 'nutrients': issue.get('details', {})},
                ))

        tanks = {}
        for tank_id, tank_formula in assign_to_tanks(optim.formula, 2, catalog=catalog).items():
            if not tank_formula:
                continue
            stock = {fert_id: grams * concentration for fert_id, grams in tank_formula.items()}
            tanks[tank_id] = {
                'id': tank_id,
                'fertilizers': {
                    fert_id: {
                        'grams_per_L': stock_gl,
                        'grams_total': stock_gl * options.stock_tank_volume_l,
                        'solubility_pct': stock_gl / catalog.get_solubility(fert_id) * 100,
                    }
                    for fert_id, stock_gl in stock.items()
                },
            }
            issues.extend(check_tank_feasibility(stock, catalog)['issues'])
            issues.extend(check_tank_compatibility(tank_id, stock, catalog))

        plans.append({
            'target_id': target.id,
            'tanks': tanks,
            'dosing': {tank_id: {'mL_per_L': 1000 / concentration} for tank_id in tanks},
            'achieved': optim.achieved,
            'ec_scaling': optim.ec_scaling,
            'issues': issues,
        })
        all_issues.extend(issues)

    return {
        'success': not error_issues(all_issues),
        'mode': 'A',
        'plans': plans,
        'errors': error_issues(all_issues),
        'warnings': warning_issues(all_issues),
        'meta': {
            'concentration_factor': concentration,
            'tank_volume_l': options.stock_tank_volume_l,
            'baseline_ec': options.baseline_ec,
            'mode': 'A',
        },
    }
