"""
Tests for the bounded iteration helpers.
"""
from hydrodoser.services.hydro_convergence import first_success, iterate_until


class TestIterateUntil:

    def test_stops_when_predicate_holds(self):
        outcome = iterate_until(lambda v: v >= 8, 10, lambda v: v * 2, 1)
        assert outcome.value == 8
        assert outcome.iterations == 3
        assert outcome.converged is True

    def test_initial_state_already_converged(self):
        calls = []

        def step(v):
            calls.append(v)
            return v + 1

        outcome = iterate_until(lambda v: True, 5, step, 0)
        assert outcome.iterations == 0
        assert calls == []

    def test_respects_iteration_cap(self):
        outcome = iterate_until(lambda v: False, 5, lambda v: v + 1, 0)
        assert outcome.value == 5
        assert outcome.iterations == 5
        assert outcome.converged is False

    def test_last_step_can_converge(self):
        outcome = iterate_until(lambda v: v == 3, 3, lambda v: v + 1, 0)
        assert outcome.value == 3
        assert outcome.converged is True

    def test_zero_iterations_evaluates_initial(self):
        outcome = iterate_until(lambda v: v > 0, 0, lambda v: v + 1, 1)
        assert outcome.converged is True
        assert outcome.value == 1


class TestFirstSuccess:

    def test_returns_first_non_none(self):
        calls = []

        def none_strategy():
            calls.append('none')
            return None

        def found():
            calls.append('found')
            return 'solution'

        def never():
            calls.append('never')
            return 'other'

        assert first_success([none_strategy, found, never]) == 'solution'
        assert calls == ['none', 'found']

    def test_all_strategies_fail(self):
        assert first_success([lambda: None, lambda: None]) is None

    def test_falsy_results_still_count(self):
        assert first_success([lambda: 0, lambda: 1]) == 0
