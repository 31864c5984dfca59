"""
Nutrient contribution calculator.

Turns a fertilizer's percentage composition plus a dose into ppm per nutrient.
A 1% weight fraction dosed at 1 g in 1 L gives 10 ppm. Every service that asks
"what does X grams of fertilizer Y contribute" goes through this module so
nitrogen forms and oxide conversions are handled the same way everywhere.
"""
import logging
from typing import Dict, Optional, Any

from hydrodoser.schemas.hydro_schemas import Fertilizer
from hydrodoser.services.hydro_chemistry import (
    OXIDE_TO_ELEMENT,
    P_TO_P2O5,
    K_TO_K2O,
    NITROGEN_FORMS,
    NUTRIENT_KEYS,
)
from hydrodoser.services.hydro_rules import MILP_NUTRIENTS

logger = logging.getLogger(__name__)

PPM_PER_PERCENT_GRAM = 10.0

# Keys of the elemental (ratio-space) profile used by the stock planner
ELEMENTAL_KEYS = ("N", "P", "K", "Ca", "Mg", "S", "Si", "N_NO3", "N_NH4")

ELEMENT_TO_OXIDE = {
    "P": ("P2O5", P_TO_P2O5),
    "K": ("K2O", K_TO_K2O),
}


def empty_profile() -> Dict[str, float]:
    return {key: 0.0 for key in NUTRIENT_KEYS}


def oxide_to_element(value: float, oxide: str) -> float:
    """Convert an oxide amount (P2O5, K2O, CaO, ...) to its element."""
    if oxide not in OXIDE_TO_ELEMENT:
        raise ValueError(f"Unknown oxide: {oxide}")
    return value * OXIDE_TO_ELEMENT[oxide][1]


def element_to_oxide(value: float, element: str) -> float:
    """Convert elemental P or K to P2O5 or K2O."""
    if element not in ELEMENT_TO_OXIDE:
        raise ValueError(f"No oxide form for element: {element}")
    return value * ELEMENT_TO_OXIDE[element][1]


def contribution_per_gram(fert: Fertilizer, volume: float = 1.0) -> Dict[str, float]:
    """
    ppm contributed by one gram of fertilizer dissolved in `volume` liters.

    - Speciated nitrogen (N_NO3, N_NH4, N_Urea) replaces a declared N_total;
      N_total is then reported as the sum of the forms.
    - Oxides add their elemental equivalent unless the element itself is
      declared, and the oxide ppm is kept for oxide-basis display.
    - Elemental P and K without a declared oxide also get P2O5/K2O filled in.
    - Any other key passes through unchanged.
    """
    if volume <= 0:
        raise ValueError(f"volume must be positive, got {volume}")

    factor = PPM_PER_PERCENT_GRAM / volume
    pct = {key: value for key, value in fert.pct.items() if value}
    has_forms = any(pct.get(form, 0) > 0 for form in NITROGEN_FORMS)

    result: Dict[str, float] = {}
    for key, value in pct.items():
        if key == "N_total" and has_forms:
            continue
        result[key] = result.get(key, 0.0) + value * factor

    if has_forms:
        result["N_total"] = sum(result.get(form, 0.0) for form in NITROGEN_FORMS)

    for oxide, (element, conversion) in OXIDE_TO_ELEMENT.items():
        if oxide in pct and element not in pct:
            result[element] = result.get(element, 0.0) + pct[oxide] * factor * conversion

    for element, (oxide, conversion) in ELEMENT_TO_OXIDE.items():
        if element in pct and oxide not in pct:
            result[oxide] = pct[element] * factor * conversion

    return result


def milp_contribution_per_gram(fert: Fertilizer, volume: float = 1.0) -> Dict[str, float]:
    """Contribution restricted to the nutrients the formula solver tracks."""
    contrib = contribution_per_gram(fert, volume)
    return {key: contrib.get(key, 0.0) for key in MILP_NUTRIENTS}


def elemental_contribution_per_gram(fert: Fertilizer) -> Dict[str, float]:
    """Elemental ppm per g/L, keyed the way ratio targets are (N, P, K, ...)."""
    contrib = contribution_per_gram(fert, 1.0)
    result = {key: contrib.get(key, 0.0) for key in ELEMENTAL_KEYS}
    result["N"] = contrib.get("N_total", 0.0)
    return result


def calculate_ppm(formula: Dict[str, float], fertilizers: Any, volume: float = 1.0) -> Dict[str, float]:
    """
    Achieved ppm profile of a formula.

    Args:
        formula: fertilizer id -> grams dissolved in `volume` liters
        fertilizers: anything with a .get(id) returning a Fertilizer
            (a dict keyed by id or a FertilizerCatalog)
        volume: liters of final solution
    """
    profile = empty_profile()
    for fert_id, grams in formula.items():
        if not grams:
            continue
        fert: Optional[Fertilizer] = fertilizers.get(fert_id)
        if fert is None:
            logger.warning(f"[Contributions] Fertilizer '{fert_id}' not found, skipped")
            continue
        for key, ppm in contribution_per_gram(fert, volume).items():
            profile[key] = profile.get(key, 0.0) + ppm * grams
    return profile


def scale_profile(profile: Dict[str, float], factor: float) -> Dict[str, float]:
    return {key: value * factor for key, value in profile.items()}
