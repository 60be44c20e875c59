"""Tests for the built-in demo scenarios."""

import pytest

from demos import DEMOS, demo_names, load_demo
from replay import compute_scenario_state
from scenario import ScenarioDefinitionError


class TestDemoCatalogue:

    def test_names_sorted(self):
        assert demo_names() == sorted(DEMOS)
        assert "dirty_read" in demo_names()

    @pytest.mark.parametrize("name", demo_names())
    def test_every_demo_validates(self, name):
        """Test that each demo loads and its key moments fall inside the log."""
        scenario = load_demo(name)
        assert scenario.log
        assert all(1 <= km.step <= len(scenario.log) for km in scenario.key_moments)

    @pytest.mark.parametrize("name", demo_names())
    def test_no_operation_is_ignored(self, name):
        scenario = load_demo(name)
        state = compute_scenario_state(scenario, len(scenario.log))
        assert state.ignored == []

    def test_unknown_demo(self):
        with pytest.raises(ScenarioDefinitionError, match="Unknown demo 'phantom'"):
            load_demo("phantom")

    def test_demos_are_independent_copies(self):
        first = load_demo("dirty_read")
        first.transactions.clear()
        assert load_demo("dirty_read").transactions
