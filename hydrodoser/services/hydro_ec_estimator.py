"""
EC estimator.

Predicts solution conductivity from ion concentrations with a
sum-of-ionic-conductivities model:

    raw EC   = 0.001 * sum(lambda_i * c_i)              (c in mmol/L)
    I        = 0.5 * sum(c_i[mol/L] * z_i^2)
    EC       = raw / (1 + k * sqrt(I))                  (ionic strength)
    EC(T)    = EC * (1 + 0.02 * (T - 25))               (temperature)

The ppm -> ion mapping is one-directional and does not enforce charge
balance; it is a prediction, not a measurement.
"""
import logging
import math
from typing import Dict, Any, Optional

from hydrodoser.schemas.hydro_schemas import ECOptions
from hydrodoser.services.hydro_chemistry import (
    IONIC_MOLAR_CONDUCTIVITY,
    ION_CHARGES,
    EC_ION_MOLAR_MASSES,
    PPM_TO_ION,
)
from hydrodoser.services.hydro_rules import REFERENCE_TEMPERATURE_C, TEMPERATURE_COEFFICIENT

logger = logging.getLogger(__name__)


def estimate_ec(ions_mmol_l: Dict[str, float], options: Optional[ECOptions] = None) -> Dict[str, Any]:
    """Estimate EC (mS/cm) from ion concentrations in mmol/L."""
    options = options or ECOptions()

    raw_ec = 0.0
    ionic_strength = 0.0
    contributions: Dict[str, Dict[str, float]] = {}

    for ion, mmol in ions_mmol_l.items():
        if not mmol or mmol <= 0:
            continue
        conductivity = IONIC_MOLAR_CONDUCTIVITY.get(ion)
        if conductivity is None:
            logger.debug(f"[EC] No molar conductivity for {ion}, ignored")
            continue
        contribution = 0.001 * conductivity * mmol
        raw_ec += contribution
        charge = ION_CHARGES.get(ion, 1)
        ionic_strength += 0.5 * (mmol / 1000.0) * charge ** 2
        contributions[ion] = {
            "concentration_mmolL": mmol,
            "lambda": conductivity,
            "contribution_mS_cm": contribution,
        }

    ec = raw_ec
    if options.apply_ionic_strength_correction and ionic_strength > 0:
        ec = raw_ec / (1 + options.ionic_strength_k * math.sqrt(ionic_strength))

    ec_at_temp = ec * (1 + TEMPERATURE_COEFFICIENT * (options.temperature_c - REFERENCE_TEMPERATURE_C))

    return {
        "ec_mS_cm": ec,
        "ec_at_temp": ec_at_temp,
        "ionic_strength": ionic_strength,
        "contributions": contributions,
        "temperature_c": options.temperature_c,
        "raw_ec": raw_ec,
        "correction_applied": options.apply_ionic_strength_correction,
    }


def ppm_to_ions_with_details(ppm: Dict[str, float]) -> Dict[str, Dict[str, Any]]:
    """Map a ppm profile onto ions, keeping the ppm and molar mass used."""
    details: Dict[str, Dict[str, Any]] = {}
    for nutrient, ion in PPM_TO_ION:
        value = ppm.get(nutrient, 0) or 0
        if value <= 0:
            continue
        molar_mass = EC_ION_MOLAR_MASSES[ion]
        details[ion] = {
            "mmol_l": value / molar_mass,
            "ppm": value,
            "molar_mass": molar_mass,
            "source": nutrient,
        }
    return details


def ppm_to_ions(ppm: Dict[str, float]) -> Dict[str, float]:
    return {ion: d["mmol_l"] for ion, d in ppm_to_ions_with_details(ppm).items()}


def estimate_ec_from_ppm(ppm: Dict[str, float], options: Optional[ECOptions] = None) -> Dict[str, Any]:
    """Estimate EC from a ppm nutrient profile."""
    details = ppm_to_ions_with_details(ppm)
    estimate = estimate_ec({ion: d["mmol_l"] for ion, d in details.items()}, options)
    for ion, contribution in estimate["contributions"].items():
        contribution["ppm"] = details[ion]["ppm"]
        contribution["molar_mass"] = details[ion]["molar_mass"]
    return estimate
