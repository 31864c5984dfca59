"""
Tests for the Progressive-K stock tank planner.

Scenario used throughout: calcium nitrate 1.0, MKP 0.2, potassium nitrate 0.5
and magnesium sulfate 0.5 g/L reproduce a target exactly, so a 2-tank plan
(A = calcium, B = everything else) must be feasible. Raising potassium
nitrate to 0.8 g/L for a second target changes K:P independently of P:Mg,
which a single B tank cannot follow, forcing a third tank.
"""
import pytest

from hydrodoser.schemas.hydro_schemas import CompatibilityTag, RatioTarget, StockPlanOptions, StockTarget
from hydrodoser.services.hydro_catalog import get_default_catalog
from hydrodoser.services.hydro_contributions import calculate_ppm
from hydrodoser.services.hydro_issues import make_issue
from hydrodoser.services.hydro_milp_backend import get_default_backend
from hydrodoser.services.hydro_stock_tanks_service import (
    _deprioritize_tank_b_nitrogen,
    _filter_candidates,
    _representative_target,
    _variation_flags,
    assign_to_tanks,
    calculate_achieved_ppm,
    check_ratio_match,
    check_tank_compatibility,
    check_tank_feasibility,
    plan_stock_solutions,
    plan_stock_solutions_per_target,
    solve_dosing,
)


requires_milp = pytest.mark.skipif(
    not get_default_backend().is_available(),
    reason="CBC solver not available",
)

CALCINIT = 'calcium_nitrate_calcinit_typical'
MKP = 'mkp_typical'
KNO3 = 'potassium_nitrate_typical'
MGSO4 = 'magnesium_sulfate_heptahydrate_common'
K2SO4 = 'potassium_sulfate_common'
K_SILICATE = 'potassium_silicate_liquid_typical'
SSP = 'ssp_common'
MAP = 'map_typical'
WSF_CAO = 'wsf_12_6_22_12cao'

AVAILABLE = [CALCINIT, MKP, KNO3, MGSO4]


def _ratio_for(formula):
    ppm = calculate_ppm(formula, get_default_catalog(), 1.0)
    return RatioTarget(N=ppm['N_total'], P=ppm['P'], K=ppm['K'], Ca=ppm['Ca'], Mg=ppm['Mg'], S=ppm['S'])


RATIO_T1 = _ratio_for({CALCINIT: 1.0, MKP: 0.2, KNO3: 0.5, MGSO4: 0.5})
RATIO_T2 = _ratio_for({CALCINIT: 1.0, MKP: 0.2, KNO3: 0.8, MGSO4: 0.5})


def _codes(issues):
    return {issue['code'] for issue in issues}


class TestMakeIssue:

    def test_details_are_optional(self):
        assert make_issue('warning', 'X', 'msg') == {'level': 'warning', 'code': 'X', 'message': 'msg'}
        assert make_issue('error', 'Y', 'msg', {'a': 1})['details'] == {'a': 1}


class TestAssignToTanks:

    FORMULA = {CALCINIT: 1.0, MKP: 0.2, KNO3: 0.5, MGSO4: 0.5, K2SO4: 0.3, K_SILICATE: 0.1}

    def test_two_tanks(self):
        tanks = assign_to_tanks(self.FORMULA, 2)
        assert set(tanks) == {'A', 'B'}
        assert tanks['A'] == {CALCINIT: 1.0}
        assert set(tanks['B']) == {MKP, KNO3, MGSO4, K2SO4, K_SILICATE}

    def test_three_tanks_move_potassium_sources(self):
        tanks = assign_to_tanks(self.FORMULA, 3)
        assert set(tanks['B']) == {MKP, MGSO4}
        assert set(tanks['C']) == {KNO3, K2SO4, K_SILICATE}

    def test_four_tanks_put_silicate_last(self):
        tanks = assign_to_tanks(self.FORMULA, 4)
        assert tanks['D'] == {K_SILICATE: 0.1}
        assert MGSO4 in tanks['B']

    def test_separate_magnesium(self):
        tanks = assign_to_tanks(self.FORMULA, 4, separate_mg=True)
        assert set(tanks['D']) == {MGSO4, K_SILICATE}
        assert MKP in tanks['B']

    def test_separate_magnesium_needs_four_tanks(self):
        tanks = assign_to_tanks(self.FORMULA, 3, separate_mg=True)
        assert MGSO4 in tanks['B']

    def test_zero_doses_and_unknown_ids(self):
        tanks = assign_to_tanks({CALCINIT: 0.0, 'mystery_salt': 1.0}, 2)
        assert tanks['A'] == {}
        assert tanks['B'] == {'mystery_salt': 1.0}

    @pytest.mark.parametrize('num_tanks', [2, 3, 4])
    @pytest.mark.parametrize('separate_mg', [False, True])
    def test_calcium_never_shares_a_tank(self, num_tanks, separate_mg):
        catalog = get_default_catalog()
        formula = {fert.id: 1.0 for fert in catalog}
        blocked = {CompatibilityTag.SULFATE, CompatibilityTag.PHOSPHATE, CompatibilityTag.SILICATE}
        for tank in assign_to_tanks(formula, num_tanks, separate_mg).values():
            tags = {catalog.get_compatibility_tag(fid) for fid in tank}
            assert not (CompatibilityTag.CALCIUM in tags and tags & blocked)


class TestTankFeasibility:

    def test_within_limits(self):
        result = check_tank_feasibility({KNO3: 100.0, MKP: 50.0})
        assert result == {'feasible': True, 'issues': []}

    def test_near_limit_is_a_warning(self):
        result = check_tank_feasibility({KNO3: 300.0})
        assert result['feasible'] is True
        assert _codes(result['issues']) == {'SOLUBILITY_NEAR_LIMIT'}
        assert result['issues'][0]['details']['pct_used'] == pytest.approx(93.75)

    def test_exceeding_solubility_is_an_error(self):
        result = check_tank_feasibility({K2SO4: 150.0})
        assert result['feasible'] is False
        issue = result['issues'][0]
        assert issue['code'] == 'SOLUBILITY_EXCEEDED'
        assert issue['details']['max_gL'] == 120


class TestAchievedPpm:

    def test_dosing_dilutes_stock(self):
        achieved = calculate_achieved_ppm({'A': {CALCINIT: 100.0}}, {'A': 10.0})
        assert achieved['N'] == pytest.approx(155.0)
        assert achieved['Ca'] == pytest.approx(190.0)
        assert achieved['N_NO3'] == pytest.approx(144.0)

    def test_tanks_add_up(self):
        tanks = {'A': {CALCINIT: 100.0}, 'B': {MGSO4: 100.0}}
        achieved = calculate_achieved_ppm(tanks, {'A': 5.0, 'B': 2.0})
        assert achieved['Ca'] == pytest.approx(95.0)
        assert achieved['Mg'] == pytest.approx(19.72)

    def test_undosed_tank_contributes_nothing(self):
        achieved = calculate_achieved_ppm({'A': {CALCINIT: 100.0}}, {'A': 0.0})
        assert achieved['Ca'] == 0.0


class TestRatioMatch:

    def test_scaled_profile_matches(self):
        achieved = {'N': 300.0, 'P': 100.0, 'K': 200.0}
        assert check_ratio_match(achieved, {'N': 3, 'P': 1, 'K': 2})['matches'] is True

    def test_mismatch_reports_normalized_values(self):
        achieved = {'N': 300.0, 'P': 100.0, 'K': 300.0}
        result = check_ratio_match(achieved, RatioTarget(N=3, P=1, K=2), tolerance=0.05)
        assert result['matches'] is False
        assert set(result['errors']) == {'K'}
        assert result['errors']['K']['target'] == pytest.approx(2.0)
        assert result['errors']['K']['achieved'] == pytest.approx(3.0)
        assert result['errors']['K']['error'] == pytest.approx(0.5)

    def test_missing_nutrient_is_a_mismatch(self):
        result = check_ratio_match({'N': 300.0, 'P': 0.0}, {'N': 3, 'P': 1})
        assert result['matches'] is False


class TestSolveDosing:

    TANKS = {
        'A': {CALCINIT: 100.0},
        'B': {MKP: 20.0, KNO3: 50.0, MGSO4: 50.0},
    }

    def test_matches_ratio_then_ec(self):
        result = solve_dosing(self.TANKS, RATIO_T1, target_ec=2.0)
        assert result['feasible'] is True
        assert result['predicted_ec'] == pytest.approx(2.0, rel=0.01)
        assert result['dosing']['A'] == pytest.approx(result['dosing']['B'], rel=0.01)
        assert 'RATIO_MISMATCH' not in _codes(result['issues'])
        assert 'EC_MISMATCH' not in _codes(result['issues'])

    def test_baseline_ec_is_subtracted(self):
        plain = solve_dosing(self.TANKS, RATIO_T1, target_ec=2.0)
        with_baseline = solve_dosing(self.TANKS, RATIO_T1, target_ec=2.0, baseline_ec=0.5)
        assert with_baseline['predicted_ec'] == pytest.approx(2.0, rel=0.01)
        assert sum(with_baseline['dosing'].values()) < sum(plain['dosing'].values())

    def test_ec_below_baseline_is_unachievable(self):
        result = solve_dosing(self.TANKS, RATIO_T1, target_ec=0.5, baseline_ec=1.0)
        assert result['feasible'] is False
        assert _codes(result['issues']) == {'EC_UNACHIEVABLE'}

    def test_empty_tanks(self):
        result = solve_dosing({'A': {}, 'B': {}}, RATIO_T1, target_ec=2.0)
        assert _codes(result['issues']) == {'NO_FERTILIZERS'}

    def test_dosing_over_max_is_an_error(self):
        result = solve_dosing(self.TANKS, RATIO_T1, target_ec=2.0, max_dosing=1.0)
        assert result['feasible'] is False
        assert 'DOSING_EXCEEDS_MAX' in _codes(result['issues'])

    def test_high_dosing_is_a_warning(self):
        required = sum(solve_dosing(self.TANKS, RATIO_T1, target_ec=2.0)['dosing'].values())
        result = solve_dosing(self.TANKS, RATIO_T1, target_ec=2.0, max_dosing=required / 0.9)
        assert result['feasible'] is True
        assert 'HIGH_DOSING_VOLUME' in _codes(result['issues'])
        assert 'DOSING_EXCEEDS_MAX' not in _codes(result['issues'])

    def test_comfortable_dosing_has_no_volume_issue(self):
        required = sum(solve_dosing(self.TANKS, RATIO_T1, target_ec=2.0)['dosing'].values())
        result = solve_dosing(self.TANKS, RATIO_T1, target_ec=2.0, max_dosing=required * 2)
        assert not _codes(result['issues']) & {'HIGH_DOSING_VOLUME', 'DOSING_EXCEEDS_MAX'}

    def test_unreachable_ratio_is_a_mismatch(self):
        result = solve_dosing(self.TANKS, RATIO_T2, target_ec=2.0)
        assert result['feasible'] is False
        assert 'K' in next(i for i in result['issues'] if i['code'] == 'RATIO_MISMATCH')['details']

    def test_single_tank(self):
        result = solve_dosing({'B': {KNO3: 100.0}}, {'N': 13.7, 'K': 38.4}, target_ec=1.0)
        assert list(result['dosing']) == ['B']
        assert result['predicted_ec'] == pytest.approx(1.0, rel=0.01)


class TestTankCompatibility:

    def test_calcium_bearing_phosphate_with_phosphate(self):
        issues = check_tank_compatibility('B', {SSP: 50.0, MKP: 20.0})
        assert _codes(issues) == {'TANK_INCOMPATIBILITY'}
        assert issues[0]['level'] == 'warning'
        assert issues[0]['details'] == {'tank': 'B', 'fertilizers': [MKP, SSP]}

    def test_cao_npk_in_phosphate_tank(self):
        assert _codes(check_tank_compatibility('B', {WSF_CAO: 30.0, MKP: 20.0})) == {'TANK_INCOMPATIBILITY'}

    def test_clean_tanks(self):
        assert check_tank_compatibility('A', {CALCINIT: 100.0, KNO3: 50.0}) == []
        assert check_tank_compatibility('B', {MKP: 20.0, KNO3: 50.0, MGSO4: 50.0}) == []

    def test_undosed_fertilizer_is_ignored(self):
        assert check_tank_compatibility('B', {SSP: 0.0, MKP: 20.0}) == []


def _target(target_id, **ratio):
    return StockTarget(id=target_id, ratio=RatioTarget(**ratio), target_ec=2.0)


def _ids(fertilizers):
    return [fert.id for fert in fertilizers]


class TestPlannerHelpers:

    FULL = [CALCINIT, KNO3, MKP, MAP, MGSO4, K2SO4]

    @pytest.fixture
    def fertilizers(self):
        return get_default_catalog().resolve_ids(self.FULL)

    def test_variation_flags(self):
        targets = [_target('t1', N=3, P=1, K=2, Mg=0.5), _target('t2', N=7, P=1, K=2, Mg=0.5)]
        assert _variation_flags(targets) == {'np': True, 'pk': False, 'pmg': False}

    def test_single_target_has_no_variation(self):
        assert _variation_flags([_target('t1', N=3, P=1)]) == {'np': False, 'pk': False, 'pmg': False}

    def test_np_variation_drops_n_plus_p_sources(self, fertilizers):
        filtered = _filter_candidates(fertilizers, {'np': True, 'pk': False, 'pmg': False})
        assert _ids(filtered) == [CALCINIT, KNO3, MKP, MGSO4, K2SO4]

    def test_pk_variation_drops_p_plus_k_sources(self, fertilizers):
        filtered = _filter_candidates(fertilizers, {'np': False, 'pk': True, 'pmg': False})
        assert _ids(filtered) == [CALCINIT, KNO3, MAP, MGSO4, K2SO4]

    def test_filter_reverts_when_phosphorus_disappears(self, fertilizers):
        filtered = _filter_candidates(fertilizers, {'np': True, 'pk': True, 'pmg': False})
        assert _ids(filtered) == self.FULL

    def test_filter_reverts_when_too_few_remain(self):
        fertilizers = get_default_catalog().resolve_ids([MAP, KNO3, CALCINIT])
        filtered = _filter_candidates(fertilizers, {'np': True, 'pk': False, 'pmg': False})
        assert _ids(filtered) == [MAP, KNO3, CALCINIT]

    def test_no_variation_keeps_everything(self, fertilizers):
        filtered = _filter_candidates(fertilizers, {'np': False, 'pk': False, 'pmg': False})
        assert _ids(filtered) == self.FULL

    def test_representative_is_median_np(self):
        targets = [_target('high', N=5, P=1), _target('low', N=1, P=1), _target('mid', N=3, P=1)]
        assert _representative_target(targets).id == 'mid'

    def test_representative_of_two_is_upper_median(self):
        targets = [_target('high', N=6, P=1), _target('low', N=2, P=1)]
        assert _representative_target(targets).id == 'high'

    def test_missing_p_ranks_highest(self):
        targets = [_target('no_p', N=1, K=1), _target('a', N=2, P=1), _target('b', N=4, P=1)]
        assert _representative_target(targets).id == 'b'
        assert _representative_target(targets[:2]).id == 'no_p'

    def test_low_np_deprioritizes_non_calcium_nitrogen(self, fertilizers):
        adjusted = {fert.id: fert for fert in _deprioritize_tank_b_nitrogen(fertilizers, 1.0)}
        assert adjusted[KNO3].priority == 50
        assert adjusted[MAP].priority == 50
        assert adjusted[CALCINIT].priority == fertilizers[0].priority
        assert adjusted[MKP].priority == fertilizers[2].priority
        assert fertilizers[1].priority != 50

    def test_balanced_np_keeps_priorities(self, fertilizers):
        assert _deprioritize_tank_b_nitrogen(fertilizers, 3.0) is fertilizers


class TestPlanValidation:

    def test_no_targets(self):
        result = plan_stock_solutions([], AVAILABLE)
        assert result['success'] is False
        assert _codes(result['errors']) == {'NO_TARGETS'}

    def test_no_fertilizers(self):
        target = StockTarget(id='t1', ratio=RATIO_T1, target_ec=2.0)
        assert _codes(plan_stock_solutions([target], [])['errors']) == {'NO_FERTILIZERS'}

    def test_unknown_fertilizers(self):
        target = StockTarget(id='t1', ratio=RATIO_T1, target_ec=2.0)
        result = plan_stock_solutions([target], ['nope', 'also_nope'])
        assert _codes(result['errors']) == {'NO_VALID_FERTILIZERS'}

    def test_mode_a_validation(self):
        result = plan_stock_solutions_per_target([], AVAILABLE)
        assert result['mode'] == 'A'
        assert _codes(result['errors']) == {'NO_TARGETS'}


@requires_milp
class TestProgressiveK:

    def test_single_target_uses_two_tanks(self):
        targets = [{'id': 't1', 'ratio': RATIO_T1.model_dump(), 'target_ec': 2.0}]
        result = plan_stock_solutions(targets, AVAILABLE)

        assert result['success'] is True
        assert result['meta']['progressive_k'] == 2
        assert result['meta']['num_tanks'] == 2
        assert set(result['tanks']['A']['fertilizers']) == {CALCINIT}
        assert set(result['tanks']['B']['fertilizers']) == {MKP, KNO3, MGSO4}
        assert result['meta']['concentration_factor'] == 100
        assert result['meta']['base_target_id'] == 't1'

        instruction = result['dosing'][0]
        assert instruction['target_id'] == 't1'
        assert instruction['predicted']['ec'] == pytest.approx(2.0, rel=0.05)
        assert instruction['tanks']['A']['mL_total'] == pytest.approx(instruction['tanks']['A']['mL_per_L'] * 1000)
        assert instruction['predicted']['ion_balance']['cations'] > 0

    def test_stock_strength_and_totals(self):
        options = StockPlanOptions(stock_concentration=50, stock_tank_volume_l=10)
        targets = [StockTarget(id='t1', ratio=RATIO_T1, target_ec=2.0)]
        result = plan_stock_solutions(targets, AVAILABLE, options)

        assert result['success'] is True
        calcinit = result['tanks']['A']['fertilizers'][CALCINIT]
        assert calcinit['grams_total'] == pytest.approx(calcinit['grams_per_L'] * 10)
        assert calcinit['solubility_pct'] == pytest.approx(calcinit['grams_per_L'] / 1290 * 100)
        assert result['tanks']['A']['total_solids_gL'] == pytest.approx(calcinit['grams_per_L'])

    def test_escalates_when_two_tanks_cannot_follow_both_targets(self):
        targets = [
            StockTarget(id='t1', ratio=RATIO_T1, target_ec=2.0),
            StockTarget(id='t2', ratio=RATIO_T2, target_ec=2.0),
        ]
        result = plan_stock_solutions(targets, AVAILABLE)

        assert result['success'] is True
        assert result['meta']['progressive_k'] == 3
        assert result['meta']['base_target_id'] == 't2'
        assert KNO3 in result['tanks']['C']['fertilizers']
        assert CALCINIT in result['tanks']['A']['fertilizers']
        assert 'CONCENTRATION_REDUCED' in _codes(result['warnings'])
        assert result['meta']['concentration_factor'] < 100
        assert [d['target_id'] for d in result['dosing']] == ['t1', 't2']

    def test_tank_cap_reports_infeasible(self):
        targets = [
            StockTarget(id='t1', ratio=RATIO_T1, target_ec=2.0),
            StockTarget(id='t2', ratio=RATIO_T2, target_ec=2.0),
        ]
        result = plan_stock_solutions(targets, AVAILABLE, StockPlanOptions(max_tanks=2))

        assert result['success'] is False
        assert {'RATIO_MISMATCH', 'INFEASIBLE'} <= _codes(result['errors'])

    def test_low_solubility_source_is_too_dilute(self):
        targets = [StockTarget(id='t1', ratio=_ratio_for({SSP: 1.0}), target_ec=1.5)]
        result = plan_stock_solutions(targets, [SSP, CALCINIT, KNO3])

        assert result['success'] is False
        assert {'CONCENTRATION_TOO_LOW', 'INFEASIBLE'} <= _codes(result['errors'])

    def test_target_baseline_overrides_default(self):
        targets = [StockTarget(id='t1', ratio=RATIO_T1, target_ec=2.0, baseline_ec=0.4)]
        result = plan_stock_solutions(targets, AVAILABLE, StockPlanOptions(baseline_ec=0.1))
        assert result['dosing'][0]['predicted']['ec'] == pytest.approx(2.0, rel=0.05)

    def test_per_target_mode(self):
        targets = [
            StockTarget(id='t1', ratio=RATIO_T1, target_ec=2.0),
            StockTarget(id='low', ratio=RATIO_T1, target_ec=0.3, baseline_ec=0.5),
        ]
        result = plan_stock_solutions_per_target(targets, AVAILABLE)

        assert result['mode'] == 'A'
        assert result['success'] is False
        assert _codes(result['errors']) == {'EC_UNACHIEVABLE'}

        plan = result['plans'][0]
        assert set(plan['tanks']) == {'A', 'B'}
        assert plan['dosing']['A']['mL_per_L'] == pytest.approx(10.0)
        assert plan['ec_scaling']['achieved_ec'] == pytest.approx(2.0, rel=0.01)
        assert result['plans'][1]['tanks'] == {}

    def test_per_target_mode_reports_formula_shortfall(self):
        targets = [StockTarget(id='rich_n', ratio=RatioTarget(N=3, P=1, K=2, Ca=2, Mg=0.5), target_ec=2.0)]
        result = plan_stock_solutions_per_target(targets, AVAILABLE)

        warning = next(w for w in result['warnings'] if w['code'] == 'FORMULA_OUTSIDE_TOLERANCE')
        assert warning['details']['target_id'] == 'rich_n'
        assert 'N_total' in warning['details']['nutrients']
