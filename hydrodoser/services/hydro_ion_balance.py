"""
Ion balance calculator.
Converts fertilizer doses into cation/anion meq/L from each fertilizer's
dissociation stoichiometry and reports the charge-balance error.
"""
import logging
from typing import Dict, Any, Optional

from hydrodoser.services.hydro_catalog import FertilizerCatalog, get_default_catalog
from hydrodoser.services.hydro_rules import ION_BALANCE_BALANCED_PCT, ION_BALANCE_CAUTION_PCT

logger = logging.getLogger(__name__)


def get_ion_balance_status(imbalance: float) -> str:
    """Fixed thresholds: <=10% balanced, <=20% caution, otherwise imbalanced."""
    if imbalance <= ION_BALANCE_BALANCED_PCT:
        return "balanced"
    if imbalance <= ION_BALANCE_CAUTION_PCT:
        return "caution"
    return "imbalanced"


def calculate_ion_balance(
    doses: Dict[str, float],
    volume: float = 1.0,
    include_breakdown: bool = False,
    catalog: Optional[FertilizerCatalog] = None,
) -> Dict[str, Any]:
    """
    Charge balance of a set of fertilizer doses.

    Args:
        doses: fertilizer id -> grams dissolved in `volume` liters
        volume: liters of solution
        include_breakdown: add per-fertilizer meq/L by ion
        catalog: source of dissociation data (defaults to the packaged catalog)

    Returns:
        Dict with total_cations, total_anions (meq/L), imbalance (%),
        status_level and ion_details; fertilizer_breakdown when requested.
        Fertilizers without stoichiometry data are listed under 'skipped'.
    """
    if volume <= 0:
        raise ValueError(f"volume must be positive, got {volume}")
    catalog = catalog if catalog is not None else get_default_catalog()

    total_cations = 0.0
    total_anions = 0.0
    ion_details: Dict[str, Dict[str, Any]] = {}
    breakdown: Dict[str, Dict[str, float]] = {}
    skipped = []

    for fert_id, grams in doses.items():
        if not grams or grams <= 0:
            continue
        stoich = catalog.get_ion_stoichiometry(fert_id)
        if stoich is None:
            skipped.append(fert_id)
            continue

        moles = grams / stoich["molar_mass"]
        fert_ions: Dict[str, float] = {}
        for ion in stoich["ions"]:
            meq = moles * ion.count * ion.charge * 1000 / volume
            if ion.type == "cation":
                total_cations += meq
            else:
                total_anions += meq
            detail = ion_details.setdefault(ion.ion, {"meq": 0.0, "type": ion.type})
            detail["meq"] += meq
            fert_ions[ion.ion] = fert_ions.get(ion.ion, 0.0) + meq
        breakdown[fert_id] = fert_ions

    if skipped:
        logger.debug(f"[IonBalance] No stoichiometry for: {', '.join(skipped)}")

    average = (total_cations + total_anions) / 2
    imbalance = abs(total_cations - total_anions) / average * 100 if average > 0 else 0.0

    result = {
        "total_cations": total_cations,
        "total_anions": total_anions,
        "imbalance": imbalance,
        "status_level": get_ion_balance_status(imbalance),
        "ion_details": ion_details,
        "skipped": skipped,
    }
    if include_breakdown:
        result["fertilizer_breakdown"] = breakdown
    return result
