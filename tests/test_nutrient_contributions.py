"""
Tests for the nutrient contribution calculator.

Covers percentage scaling, nitrogen speciation, oxide <-> element handling
and formula-level ppm profiles.
"""
import pytest

from hydrodoser.schemas.hydro_schemas import Fertilizer
from hydrodoser.services.hydro_contributions import (
    calculate_ppm,
    contribution_per_gram,
    element_to_oxide,
    elemental_contribution_per_gram,
    milp_contribution_per_gram,
    oxide_to_element,
)
from hydrodoser.services.hydro_rules import MILP_NUTRIENTS


CALCINIT = Fertilizer(
    id='calcinit',
    name='Calcium Nitrate',
    pct={'N_total': 15.5, 'N_NO3': 14.4, 'N_NH4': 1.1, 'Ca': 19.0},
)
MKP = Fertilizer(id='mkp', name='MKP', pct={'P2O5': 52.0, 'K2O': 34.0})
KNO3 = Fertilizer(id='kno3', name='Potassium Nitrate', pct={'N_total': 13.7, 'K2O': 46.3})
MGSO4 = Fertilizer(id='mgso4', name='Magnesium Sulfate', pct={'Mg': 9.86, 'S': 13.0})
PHOS_ACID = Fertilizer(id='phos_acid', name='Phosphoric Acid', pct={'P': 18.6})
MG_BOTH = Fertilizer(id='mg_both', name='MgSO4 16 MgO', pct={'MgO': 16.0, 'Mg': 9.6, 'S': 13.0})


class TestContributionPerGram:
    """One gram per liter of each fertilizer."""

    def test_calcium_nitrate_linear_scaling(self):
        contrib = contribution_per_gram(CALCINIT, 1.0)
        assert contrib['N_total'] == pytest.approx(155.0)
        assert contrib['Ca'] == pytest.approx(190.0)

    def test_nitrogen_forms_replace_declared_total(self):
        contrib = contribution_per_gram(CALCINIT, 1.0)
        assert contrib['N_NO3'] == pytest.approx(144.0)
        assert contrib['N_NH4'] == pytest.approx(11.0)
        assert contrib['N_total'] == pytest.approx(contrib['N_NO3'] + contrib['N_NH4'])

    def test_oxides_add_elemental_equivalent(self):
        contrib = contribution_per_gram(MKP, 1.0)
        assert contrib['P2O5'] == pytest.approx(520.0)
        assert contrib['K2O'] == pytest.approx(340.0)
        assert contrib['P'] == pytest.approx(520.0 * 0.43646)
        assert contrib['K'] == pytest.approx(340.0 * 0.83013)

    def test_element_declared_wins_over_oxide(self):
        contrib = contribution_per_gram(MG_BOTH, 1.0)
        assert contrib['Mg'] == pytest.approx(96.0)
        assert contrib['MgO'] == pytest.approx(160.0)

    def test_elemental_p_fills_oxide(self):
        contrib = contribution_per_gram(PHOS_ACID, 1.0)
        assert contrib['P'] == pytest.approx(186.0)
        assert contrib['P2O5'] == pytest.approx(186.0 / 0.43646)

    def test_volume_divides_contribution(self):
        assert contribution_per_gram(MGSO4, 10.0)['Mg'] == pytest.approx(9.86)

    def test_non_positive_volume_raises(self):
        with pytest.raises(ValueError):
            contribution_per_gram(MGSO4, 0)

    def test_milp_contribution_has_exactly_tracked_nutrients(self):
        contrib = milp_contribution_per_gram(KNO3)
        assert set(contrib) == set(MILP_NUTRIENTS)
        assert contrib['N_total'] == pytest.approx(137.0)
        assert contrib['Ca'] == 0.0

    def test_elemental_contribution_uses_ratio_keys(self):
        contrib = elemental_contribution_per_gram(CALCINIT)
        assert contrib['N'] == pytest.approx(155.0)
        assert contrib['N_NO3'] == pytest.approx(144.0)
        assert contrib['P'] == 0.0


class TestOxideConversions:

    def test_oxide_to_element(self):
        assert oxide_to_element(100.0, 'K2O') == pytest.approx(83.013)
        assert oxide_to_element(100.0, 'CaO') == pytest.approx(71.469)

    def test_element_to_oxide_inverts(self):
        assert element_to_oxide(oxide_to_element(61.0, 'P2O5'), 'P') == pytest.approx(61.0)

    def test_unknown_keys_raise(self):
        with pytest.raises(ValueError):
            oxide_to_element(1.0, 'Fe2O3')
        with pytest.raises(ValueError):
            element_to_oxide(1.0, 'Ca')


class TestCalculatePpm:

    LOOKUP = {f.id: f for f in (CALCINIT, MKP, KNO3, MGSO4)}

    def test_formula_profile_sums_contributions(self):
        formula = {'calcinit': 1.0, 'mkp': 0.2, 'kno3': 0.5, 'mgso4': 0.5}
        ppm = calculate_ppm(formula, self.LOOKUP, 1.0)
        assert ppm['N_total'] == pytest.approx(223.5)
        assert ppm['Ca'] == pytest.approx(190.0)
        assert ppm['Mg'] == pytest.approx(49.3)
        assert ppm['S'] == pytest.approx(65.0)
        assert ppm['K'] == pytest.approx((68.0 + 231.5) * 0.83013)

    def test_unknown_fertilizer_is_skipped(self):
        ppm = calculate_ppm({'calcinit': 1.0, 'unknown': 5.0}, self.LOOKUP, 1.0)
        assert ppm['Ca'] == pytest.approx(190.0)

    def test_empty_formula_is_zero_profile(self):
        ppm = calculate_ppm({}, self.LOOKUP, 1.0)
        assert all(value == 0.0 for value in ppm.values())
