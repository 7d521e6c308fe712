"""Scenario simulation for month-end reconciliation.

Each scenario generates a day-by-day series of district statistics with a
seeded ``numpy`` generator and feeds it through the real state machine, one
cycle per simulated day, until the job reaches a terminal state. Nothing is
persisted; the result carries the final job and its timeline.
"""

from __future__ import annotations

import copy
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Any, Callable, Mapping

import numpy as np

from infra.timestamps import UTC, month_end
from reconciliation.config import ReconciliationConfig, merge_config
from reconciliation.jobs import ReconciliationJob, TimelineEntry, create_job
from reconciliation.state_machine import ReconciliationStateMachine, classify_outcome

LOGGER = logging.getLogger(__name__)

# Membership change as a percent of the previous total, per intensity.
INTENSITY_PERCENT = {
    "low": (0.1, 0.5),
    "medium": (1.5, 2.5),
    "high": (3.0, 6.0),
}

ChangeSchedule = Callable[[int], "str | None"]


@dataclass(frozen=True)
class SimulationScenario:
    name: str
    description: str
    schedule: ChangeSchedule
    expected_outcome: str
    entity_id: str = "SIM-D001"
    target_period: str = "2024-01"
    config_overrides: Mapping[str, Any] = field(default_factory=dict)

    def build_config(self, base: ReconciliationConfig | None = None) -> ReconciliationConfig:
        config = base or ReconciliationConfig()
        if not self.config_overrides:
            return config
        return ReconciliationConfig.from_mapping(merge_config(config.to_dict(), self.config_overrides))


@dataclass(frozen=True)
class SimulationResult:
    scenario: str
    outcome: str | None
    job: ReconciliationJob
    timeline: tuple[TimelineEntry, ...]
    total_days: int
    expected_outcome: str | None = None

    @property
    def matches_expectation(self) -> bool:
        return self.expected_outcome is None or self.outcome == self.expected_outcome

    def to_dict(self) -> dict[str, Any]:
        return {
            "scenario": self.scenario,
            "outcome": self.outcome,
            "expected_outcome": self.expected_outcome,
            "total_days": self.total_days,
            "extension_days": self.job.extension_days,
            "job": self.job.to_dict(),
        }


def _stable(day: int) -> str | None:
    return "low" if day == 1 else None


def _gradual(day: int) -> str | None:
    return "medium" if day % 2 == 0 and day <= 10 else None


def _sudden(day: int) -> str | None:
    if day == 13:
        return "high"
    return "medium" if day % 2 == 0 and day <= 10 else None


def _volatile(day: int) -> str | None:
    return "high" if day <= 16 else None


def _late(day: int) -> str | None:
    return "medium" if day % 2 == 0 else None


SCENARIOS: dict[str, SimulationScenario] = {
    scenario.name: scenario
    for scenario in (
        SimulationScenario(
            name="stable",
            description="One minor revision after month end, then no changes",
            schedule=_stable,
            expected_outcome="completed",
            entity_id="SIM-D001",
        ),
        SimulationScenario(
            name="gradual_changes",
            description="Significant revisions every other day that stop well before the deadline",
            schedule=_gradual,
            expected_outcome="completed",
            entity_id="SIM-D002",
        ),
        SimulationScenario(
            name="sudden_change",
            description="A large revision close to the deadline that forces an extension",
            schedule=_sudden,
            expected_outcome="extended",
            entity_id="SIM-D003",
        ),
        SimulationScenario(
            name="volatile",
            description="Large revisions every day for over two weeks",
            schedule=_volatile,
            expected_outcome="extended",
            entity_id="SIM-D004",
        ),
        SimulationScenario(
            name="late_finalization",
            description="Data never settles before the extended deadline",
            schedule=_late,
            expected_outcome="timeout",
            entity_id="SIM-D005",
            config_overrides={"max_reconciliation_days": 10, "stability_period_days": 5},
        ),
    )
}


def generate_base_statistics(entity_id: str, rng: np.random.Generator, *, as_of: datetime) -> dict[str, Any]:
    clubs = int(rng.integers(20, 71))
    membership = clubs * int(rng.integers(15, 26))
    return {
        "district_id": entity_id,
        "as_of_date": as_of.date().isoformat(),
        "membership": {"total": membership},
        "clubs": {"total": clubs, "distinguished": int(rng.integers(0, clubs // 2 + 1))},
    }


def apply_change(
    stats: Mapping[str, Any],
    intensity: str,
    rng: np.random.Generator,
) -> dict[str, Any]:
    """Return a revised copy of *stats*.

    Low intensity only nudges membership below the significance threshold;
    medium and high also move club and distinguished counts.
    """

    low, high = INTENSITY_PERCENT[intensity]
    updated = copy.deepcopy(dict(stats))
    total = int(updated["membership"]["total"])
    percent = float(rng.uniform(low, high))
    if intensity == "low":
        delta = max(1, math.floor(total * percent / 100))
    else:
        delta = math.ceil(total * percent / 100)
    sign = 1 if rng.random() < 0.5 else -1
    updated["membership"]["total"] = max(0, total + sign * delta)

    if intensity != "low":
        clubs = updated["clubs"]
        if rng.random() < 0.3:
            clubs["total"] = max(1, int(clubs["total"]) + int(rng.integers(-1, 2)))
        if rng.random() < 0.4:
            shifted = int(clubs["distinguished"]) + int(rng.integers(-1, 2))
            clubs["distinguished"] = max(0, min(int(clubs["total"]), shifted))
    return updated


class ReconciliationSimulator:
    """Runs named scenarios against the state machine."""

    def __init__(
        self,
        *,
        seed: int = 7,
        state_machine: ReconciliationStateMachine | None = None,
        base_config: ReconciliationConfig | None = None,
    ) -> None:
        self._seed = seed
        self._machine = state_machine or ReconciliationStateMachine()
        self._base_config = base_config
        self._scenarios = dict(SCENARIOS)

    def scenarios(self) -> list[SimulationScenario]:
        return list(self._scenarios.values())

    def register(self, scenario: SimulationScenario) -> None:
        self._scenarios[scenario.name] = scenario

    def simulate(self, name: str) -> SimulationResult:
        scenario = self._scenarios.get(name)
        if scenario is None:
            raise KeyError(f"Unknown scenario '{name}'. Available: {', '.join(sorted(self._scenarios))}")
        rng = np.random.default_rng(self._seed)
        config = scenario.build_config(self._base_config)
        start = datetime.combine(month_end(scenario.target_period), time(0, 0), tzinfo=UTC) + timedelta(days=1)

        data = generate_base_statistics(scenario.entity_id, rng, as_of=start)
        job = create_job(
            scenario.entity_id,
            scenario.target_period,
            config=config,
            baseline=data,
            start=start,
            metadata={"simulation": scenario.name},
        )
        horizon = config.max_reconciliation_days + config.max_extension_days
        day = 0
        for day in range(1, horizon + 1):
            moment = start + timedelta(days=day)
            intensity = scenario.schedule(day)
            if intensity:
                data = apply_change(data, intensity, rng)
            data = {**data, "as_of_date": moment.date().isoformat()}
            job = self._machine.evaluate_cycle(job, data, now=moment).job
            if job.is_terminal():
                break

        outcome = classify_outcome(job)
        LOGGER.info("Simulated %s: %s after %d days", scenario.name, outcome, day)
        return SimulationResult(
            scenario=scenario.name,
            outcome=outcome,
            job=job,
            timeline=job.timeline,
            total_days=day,
            expected_outcome=scenario.expected_outcome,
        )

    def simulate_all(self) -> list[SimulationResult]:
        return [self.simulate(name) for name in self._scenarios]


__all__ = [
    "INTENSITY_PERCENT",
    "ReconciliationSimulator",
    "SCENARIOS",
    "SimulationResult",
    "SimulationScenario",
    "apply_change",
    "generate_base_statistics",
]
