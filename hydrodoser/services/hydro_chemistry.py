"""
Fixed chemical constants for nutrient-solution calculations.

Stoichiometric oxide-to-element mass fractions, ionic molar conductivities at
infinite dilution (25 °C, S·cm²/mol), ionic charges, and the molar masses used
to turn a ppm nutrient profile into mmol/L of the corresponding ion.
None of these are derived at runtime.
"""
from typing import Dict, List, Tuple

OXIDE_CONVERSIONS: Dict[str, float] = {
    "P2O5_to_P": 0.43646,
    "K2O_to_K": 0.83013,
    "CaO_to_Ca": 0.71469,
    "MgO_to_Mg": 0.60317,
    "SO3_to_S": 0.40059,
    "SiO2_to_Si": 0.46744,
    "SiOH4_to_Si": 0.2922,  # orthosilicic acid
}

# oxide key -> (element key, factor)
OXIDE_TO_ELEMENT: Dict[str, Tuple[str, float]] = {
    "P2O5": ("P", OXIDE_CONVERSIONS["P2O5_to_P"]),
    "K2O": ("K", OXIDE_CONVERSIONS["K2O_to_K"]),
    "CaO": ("Ca", OXIDE_CONVERSIONS["CaO_to_Ca"]),
    "MgO": ("Mg", OXIDE_CONVERSIONS["MgO_to_Mg"]),
    "SO3": ("S", OXIDE_CONVERSIONS["SO3_to_S"]),
    "SiO2": ("Si", OXIDE_CONVERSIONS["SiO2_to_Si"]),
    "SiOH4": ("Si", OXIDE_CONVERSIONS["SiOH4_to_Si"]),
}

P_TO_P2O5 = 1 / OXIDE_CONVERSIONS["P2O5_to_P"]
K_TO_K2O = 1 / OXIDE_CONVERSIONS["K2O_to_K"]

NITROGEN_FORMS = ("N_NO3", "N_NH4", "N_Urea")

NUTRIENT_KEYS = (
    "N_total", "N_NO3", "N_NH4", "N_Urea",
    "P", "P2O5", "K", "K2O", "Ca", "CaO", "Mg", "MgO", "S", "SO3",
    "Si", "SiO2", "SiOH4",
    "B", "Fe", "Mn", "Zn", "Cu", "Mo", "Na", "Cl", "Co", "Ni",
)

DEFAULT_SOLUBILITY_GL = 200

IONIC_MOLAR_CONDUCTIVITY: Dict[str, float] = {
    # cations
    "K+": 73.5,
    "Na+": 50.1,
    "NH4+": 73.5,
    "Ca2+": 119.0,
    "Mg2+": 106.0,
    "Fe2+": 108.0,
    "Fe3+": 204.0,
    "Mn2+": 107.0,
    "Zn2+": 105.6,
    "Cu2+": 107.2,
    "H+": 349.8,
    # anions
    "NO3-": 71.5,
    "Cl-": 76.3,
    "SO4^2-": 160.0,
    "H2PO4-": 33.5,
    "HPO4^2-": 114.0,
    "HCO3-": 44.5,
    "OH-": 198.0,
}

ION_CHARGES: Dict[str, int] = {
    "K+": 1,
    "Na+": 1,
    "NH4+": 1,
    "Ca2+": 2,
    "Mg2+": 2,
    "Fe2+": 2,
    "Fe3+": 3,
    "Mn2+": 2,
    "Zn2+": 2,
    "Cu2+": 2,
    "H+": 1,
    "NO3-": 1,
    "Cl-": 1,
    "SO4^2-": 2,
    "H2PO4-": 1,
    "HPO4^2-": 2,
    "HCO3-": 1,
    "OH-": 1,
}

# Molar mass of the nutrient atom carried by each ion, since ppm is reported
# as N, P or S rather than as the full ion.
EC_ION_MOLAR_MASSES: Dict[str, float] = {
    "NO3-": 14.007,
    "NH4+": 14.007,
    "H2PO4-": 30.974,
    "K+": 39.098,
    "Ca2+": 40.078,
    "Mg2+": 24.305,
    "SO4^2-": 32.065,
    "Na+": 22.99,
    "Cl-": 35.453,
    "Fe2+": 55.845,
    "Mn2+": 54.938,
    "Zn2+": 65.38,
    "Cu2+": 63.546,
}

PPM_TO_ION: List[Tuple[str, str]] = [
    ("N_NO3", "NO3-"),
    ("N_NH4", "NH4+"),
    ("P", "H2PO4-"),
    ("K", "K+"),
    ("Ca", "Ca2+"),
    ("Mg", "Mg2+"),
    ("S", "SO4^2-"),
    ("Na", "Na+"),
    ("Cl", "Cl-"),
    ("Fe", "Fe2+"),
    ("Mn", "Mn2+"),
    ("Zn", "Zn2+"),
    ("Cu", "Cu2+"),
]

# meq/L conversions for the K:Ca:Mg cation ratio
CATION_MEQ_FACTORS: Dict[str, float] = {
    "K": 1 / 39.1,
    "Ca": 2 / 40.08,
    "Mg": 2 / 24.31,
}
