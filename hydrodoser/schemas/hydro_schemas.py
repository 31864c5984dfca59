"""
Pydantic schemas for the hydroponic formulation engine.
Covers fertilizer reference entities, nutrient targets and the option blocks
accepted by the optimizer, the EC estimator and the stock planner.
"""
from pydantic import BaseModel, Field, model_validator
from typing import Annotated, Optional, List, Dict, Union, Literal
from enum import Enum

from hydrodoser.services import hydro_rules as rules


# ==================== ENUMS ====================

class Basis(str, Enum):
    """How P and K targets are expressed."""
    ELEMENTAL = "elemental"
    OXIDE = "oxide"


class CompatibilityTag(str, Enum):
    """Dominant incompatibility class of a fertilizer."""
    CALCIUM = "calcium"
    PHOSPHATE = "phosphate"
    SULFATE = "sulfate"
    SILICATE = "silicate"
    NEUTRAL = "neutral"


class SolverStrategy(str, Enum):
    """Formula solving strategy."""
    AUTO = "auto"
    MILP = "milp"
    NNLS = "nnls"


# ==================== REFERENCE DATA ====================

class IonStoichiometry(BaseModel):
    """One ion released when a formula unit dissolves."""
    ion: str
    charge: int = Field(..., ge=1)
    count: float = Field(..., gt=0)
    type: Literal["cation", "anion"]

    class Config:
        frozen = True


class IonBalanceData(BaseModel):
    """Dissociation data used by the ion balance calculator."""
    formula: str = ""
    molar_mass: float = Field(..., gt=0, description="g/mol of one formula unit")
    ions: List[IonStoichiometry] = Field(default_factory=list)

    class Config:
        frozen = True


class Fertilizer(BaseModel):
    """Immutable fertilizer reference entity."""
    id: str = Field(..., min_length=1)
    name: str = ""
    pct: Dict[str, float] = Field(default_factory=dict, description="Nutrient weight percent by key")
    solubility_gL: Optional[float] = Field(None, gt=0, description="Max dissolved g/L at reference temperature")
    priority: Optional[float] = Field(None, ge=0, description="Lower = more preferred by the solver")
    aliases: List[str] = Field(default_factory=list)
    compatibility: Optional[CompatibilityTag] = None
    ion_balance: Optional[IonBalanceData] = None

    class Config:
        frozen = True


# ==================== TARGETS ====================

class _TargetValues(BaseModel):
    N: float = Field(default=0.0, ge=0)
    P: float = Field(default=0.0, ge=0)
    K: float = Field(default=0.0, ge=0)
    Ca: float = Field(default=0.0, ge=0)
    Mg: float = Field(default=0.0, ge=0)
    S: float = Field(default=0.0, ge=0)
    Si: float = Field(default=0.0, ge=0, description="Always absolute ppm")

    @model_validator(mode="after")
    def _require_positive_value(self):
        if not any(v > 0 for v in self.nutrient_values().values()):
            raise ValueError("At least one nutrient target must be positive")
        return self

    def nutrient_values(self) -> Dict[str, float]:
        return {
            "N": self.N, "P": self.P, "K": self.K, "Ca": self.Ca,
            "Mg": self.Mg, "S": self.S, "Si": self.Si,
        }


class RatioTarget(_TargetValues):
    """Dimensionless N:P:K:Ca:Mg:S ratio, normalized to its smallest non-zero member."""
    kind: Literal["ratio"] = "ratio"


class AbsoluteTarget(_TargetValues):
    """Absolute ppm per nutrient."""
    kind: Literal["absolute"] = "absolute"


NutrientTarget = Annotated[Union[RatioTarget, AbsoluteTarget], Field(discriminator="kind")]


# ==================== OPTIONS ====================

class ECOptions(BaseModel):
    """EC estimator options."""
    temperature_c: float = Field(default=rules.REFERENCE_TEMPERATURE_C, description="Solution temperature °C")
    apply_ionic_strength_correction: bool = True
    ionic_strength_k: float = Field(default=rules.IONIC_STRENGTH_K, ge=0)


class OptimizerOptions(BaseModel):
    """Formula optimizer options, resolved once at the boundary."""
    basis: Basis = Basis.OXIDE
    volume_l: float = Field(default=1.0, gt=0, description="Final solution volume in liters")
    concentration_ppm: float = Field(default=rules.DEFAULT_CONCENTRATION_PPM, gt=0, description="ppm of the smallest ratio member")
    tolerance: float = Field(default=rules.FORMULA_TOLERANCE, ge=0, lt=1)
    target_ec: Optional[float] = Field(None, gt=0, description="mS/cm")
    pekacid_max_limit_gL: float = Field(default=0.0, ge=0)
    strategy: SolverStrategy = SolverStrategy.AUTO
    ec_options: ECOptions = Field(default_factory=ECOptions)


class StockTarget(BaseModel):
    """One target served by a shared set of stock tanks."""
    id: str = Field(..., min_length=1)
    ratio: RatioTarget
    target_ec: float = Field(..., gt=0, description="mS/cm")
    baseline_ec: Optional[float] = Field(None, ge=0, description="EC of the source water")
    max_dosing_ml: float = Field(default=rules.DEFAULT_MAX_DOSING_ML, gt=0, description="mL of stock per L")
    final_liters: float = Field(default=rules.DEFAULT_FINAL_LITERS, gt=0)


class StockPlanOptions(BaseModel):
    """Stock planner options."""
    stock_concentration: float = Field(default=rules.DEFAULT_STOCK_CONCENTRATION, gt=0, description="Stock strength (x)")
    stock_tank_volume_l: float = Field(default=rules.DEFAULT_STOCK_TANK_VOLUME_L, gt=0)
    baseline_ec: float = Field(default=0.0, ge=0)
    ratio_tolerance: float = Field(default=rules.RATIO_MATCH_TOLERANCE, gt=0, lt=1)
    max_tanks: int = Field(default=rules.MAX_TANKS, ge=rules.MIN_TANKS, le=rules.MAX_TANKS)
    solver_strategy: SolverStrategy = SolverStrategy.AUTO
    ec_options: ECOptions = Field(default_factory=ECOptions)
