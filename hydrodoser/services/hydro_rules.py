"""
Deterministic thresholds and tuning constants for hydroponic formulation.

This module centralizes constants so the optimizer, the EC model and the
stock planner stay deterministic, auditable, and consistent across services
and tests. Values that came from empirical calibration rather than chemistry
are kept here so callers can override them through the option schemas.
"""

# Formula optimizer
FORMULA_TOLERANCE = 0.01
DEFAULT_CONCENTRATION_PPM = 75.0
DEFAULT_PRIORITY = 10
FORMULA_MIN_GRAMS = 1e-4
TOLERANCE_CHECK_EPSILON = 1e-4

BIG_M = 10000
TARGETED_SLACK_PENALTY = 100
INCIDENTAL_SLACK_PENALTY = 50
SILICON_SLACK_PENALTY = 10000

PEKACID_ID = "icl_pekacid_pk_acid"
PEKACID_PRIORITY_WEIGHT = 0.01
PEKACID_FILL_PENALTY = 10000

MILP_NUTRIENTS = ("N_total", "P2O5", "K2O", "Ca", "Mg", "S", "Si")
RATIO_NUTRIENTS = ("N", "P", "K", "Ca", "Mg", "S")

# EC scaling and Si convergence
EC_SCALING_MAX_ITERATIONS = 5
EC_SCALING_ACCEPTANCE = 0.01
SI_ADJUST_MAX_ITERATIONS = 5
SI_ADJUST_ACCEPTANCE = 0.10
SI_TARGET_CAP_FACTOR = 5.0
SI_ADJUST_DEFAULT_RATIO = 2.0

# NNLS fallback
NNLS_ITERATIONS = 1500
NNLS_SUBSET_ITERATIONS = 2000
NNLS_PRUNE_ITERATIONS = 800
NNLS_LEARNING_RATES = (0.0006, 0.0003, 0.00015)
NNLS_DECAY_POINTS = (0.5, 0.8)
NNLS_L2_REGULARIZATION = 1e-4
NNLS_SOFT_WEIGHT = 0.1
NNLS_UNTARGETED_ERROR_WEIGHT = 1e-6
EXHAUSTIVE_MAX_CANDIDATES = 8
EXHAUSTIVE_MAX_SUBSET = 4

# EC estimator
IONIC_STRENGTH_K = 0.5
REFERENCE_TEMPERATURE_C = 25.0
TEMPERATURE_COEFFICIENT = 0.02

# Ion balance status (fixed)
ION_BALANCE_BALANCED_PCT = 10.0
ION_BALANCE_CAUTION_PCT = 20.0

# Stock planner
MIN_TANKS = 2
MAX_TANKS = 4
DEFAULT_STOCK_CONCENTRATION = 100
DEFAULT_STOCK_TANK_VOLUME_L = 20.0
DEFAULT_MAX_DOSING_ML = 50.0
DEFAULT_FINAL_LITERS = 1000.0
RATIO_MATCH_TOLERANCE = 0.15
PLANNER_CONCENTRATION_PPM = 150.0
SOLUBILITY_SAFETY_FACTOR = 0.8
SOLUBILITY_WARNING_PCT = 80.0
MIN_PRACTICAL_CONCENTRATION = 10
HIGH_DOSING_FRACTION = 0.8
EC_MISMATCH_TOLERANCE = 0.05
MISSING_RATIO_VALUE = 0.001

# Progressive-K candidate filtering
NP_VARIATION_LIMIT = 2.0
PK_VARIATION_LIMIT = 1.5
PMG_VARIATION_LIMIT = 1.5
SIGNIFICANT_PCT = 5.0
MIN_FILTERED_CANDIDATES = 3
LOW_NP_THRESHOLD = 1.5
DEPRIORITIZED_N_PRIORITY = 50

# Tank assignment
SIGNIFICANT_K2O_PCT = 20.0
SIGNIFICANT_P2O5_PCT = 5.0

# Dosing search
DOSING_GRID_TOTAL_ML = 10.0
TWO_TANK_RATIO_STEPS = (
    0.02, 0.05, 0.1, 0.15, 0.2, 0.3, 0.4, 0.5, 0.7, 1.0,
    1.5, 2.0, 2.5, 3.0, 4.0, 5.0, 7.0, 10.0, 15.0, 20.0, 50.0,
)
THREE_TANK_RATIO_STEPS = (0.1, 0.2, 0.5, 1.0, 2.0, 5.0, 10.0)
FOUR_TANK_RATIO_STEPS = (0.2, 0.5, 1.0, 2.0, 5.0)
REFINEMENT_DELTAS = (-0.3, -0.1, 0.1, 0.3)
REFINEMENT_MAX_ROUNDS = 10
REFINEMENT_THRESHOLD = 0.01
MIN_REFINED_DOSE_ML = 0.01
