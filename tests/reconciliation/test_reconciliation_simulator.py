from __future__ import annotations

import copy

import numpy as np
import pytest

from reconciliation.config import ConfigValidationError
from reconciliation.simulator import (
    INTENSITY_PERCENT,
    ReconciliationSimulator,
    SCENARIOS,
    SimulationScenario,
    apply_change,
    generate_base_statistics,
)
from tests.reconciliation.reconciliation_helpers import START


@pytest.mark.parametrize(
    "name, outcome, total_days, extension_days",
    [
        ("stable", "completed", 3, 0),
        ("gradual_changes", "completed", 13, 0),
        ("sudden_change", "extended", 16, 3),
        ("volatile", "extended", 19, 5),
        ("late_finalization", "timeout", 15, 5),
    ],
)
def test_scenarios_reach_expected_outcome(name, outcome, total_days, extension_days):
    result = ReconciliationSimulator(seed=11).simulate(name)
    assert result.outcome == outcome
    assert result.matches_expectation
    assert result.total_days == total_days
    assert result.job.extension_days == extension_days
    assert len(result.timeline) == total_days


@pytest.mark.parametrize("seed", [0, 7, 12345])
def test_outcomes_do_not_depend_on_seed(seed):
    results = ReconciliationSimulator(seed=seed).simulate_all()
    assert [result.scenario for result in results] == list(SCENARIOS)
    assert all(result.matches_expectation for result in results)


def test_same_seed_is_deterministic():
    first = ReconciliationSimulator(seed=3).simulate("volatile")
    second = ReconciliationSimulator(seed=3).simulate("volatile")
    assert first.job.last_data == second.job.last_data


def test_unknown_scenario():
    with pytest.raises(KeyError, match="Available"):
        ReconciliationSimulator().simulate("meteor")


def test_registered_scenario_runs():
    simulator = ReconciliationSimulator()
    simulator.register(
        SimulationScenario(
            name="quiet",
            description="No revisions at all",
            schedule=lambda day: None,
            expected_outcome="completed",
            config_overrides={"stability_period_days": 2},
        )
    )
    result = simulator.simulate("quiet")
    assert result.outcome == "completed"
    assert result.total_days == 2
    assert result.to_dict()["job"]["metadata"] == {"simulation": "quiet"}
    assert "quiet" in [scenario.name for scenario in simulator.scenarios()]
    assert "quiet" not in SCENARIOS


def test_generated_statistics_are_plausible():
    stats = generate_base_statistics("SIM-1", np.random.default_rng(1), as_of=START)
    clubs = stats["clubs"]["total"]
    assert 20 <= clubs <= 70
    assert 15 * clubs <= stats["membership"]["total"] <= 25 * clubs
    assert 0 <= stats["clubs"]["distinguished"] <= clubs // 2
    assert stats["as_of_date"] == "2024-02-01"


@pytest.mark.parametrize("intensity", sorted(INTENSITY_PERCENT))
def test_change_intensity_bounds(intensity):
    rng = np.random.default_rng(5)
    base = generate_base_statistics("SIM-1", rng, as_of=START)
    original = copy.deepcopy(base)
    low, high = INTENSITY_PERCENT[intensity]
    for _ in range(25):
        changed = apply_change(base, intensity, rng)
        before, after = base["membership"]["total"], changed["membership"]["total"]
        percent = abs(after - before) / before * 100
        assert after != before
        if intensity == "low":
            assert percent <= high
            assert changed["clubs"] == base["clubs"]
        else:
            assert percent >= low
    assert base == original


def test_scenario_overrides_are_validated():
    scenario = SimulationScenario(
        name="broken",
        description="Stability longer than the window",
        schedule=lambda day: None,
        expected_outcome="completed",
        config_overrides={"max_reconciliation_days": 3, "stability_period_days": 5},
    )
    with pytest.raises(ConfigValidationError, match="stability_period_days"):
        scenario.build_config()
    assert SCENARIOS["late_finalization"].build_config().max_reconciliation_days == 10
