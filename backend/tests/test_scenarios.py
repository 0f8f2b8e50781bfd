"""
Tests for the scenario sandbox.

Covers:
  - Weight normalisation and tail augmentation (stress share of weight)
  - Latin-hypercube stratification and coverage growth with sample count
  - Strategy fallback, horizon widening, forecast-centred demand factor
  - Seed reproducibility
"""

import numpy as np
import pytest

from prescriptive.scenarios import (
    BASE_FACTORS,
    ScenarioSandbox,
    coverage_estimate,
    inverse_cdf,
    latin_hypercube,
    stress_count,
)


class TestTailAugmentation:
    def test_weights_sum_to_one(self):
        scenario_set = ScenarioSandbox(seed=1).generate("P30D", sample_count=50)
        assert len(scenario_set) == 50
        assert sum(s.weight for s in scenario_set.scenarios) == pytest.approx(1.0)

    def test_stress_scenarios_share_ten_percent(self):
        scenario_set = ScenarioSandbox(seed=1).generate("P30D", sample_count=50)
        stress = [s for s in scenario_set.scenarios if s.is_stress]
        assert scenario_set.tail_augmented is True
        assert scenario_set.stress_count == 5
        assert sum(s.weight for s in stress) == pytest.approx(0.1)

    def test_stress_scenarios_sit_in_the_adverse_tail(self):
        scenario_set = ScenarioSandbox(seed=1).generate("P7D", sample_count=50)
        regular = [s for s in scenario_set.scenarios if not s.is_stress]
        stress = [s for s in scenario_set.scenarios if s.is_stress]
        assert max(s.factors["demand"] for s in stress) < np.median([s.factors["demand"] for s in regular])
        assert min(s.factors["unit_cost"] for s in stress) > np.median([s.factors["unit_cost"] for s in regular])

    def test_small_sets_are_not_augmented(self):
        scenario_set = ScenarioSandbox(seed=1).generate("P7D", sample_count=5)
        assert scenario_set.tail_augmented is False
        assert all(s.weight == pytest.approx(0.2) for s in scenario_set.scenarios)

    @pytest.mark.parametrize("samples,expected", [(1, 0), (9, 0), (10, 1), (50, 5), (104, 10)])
    def test_stress_count(self, samples, expected):
        assert stress_count(samples) == expected


class TestSampling:
    def test_latin_hypercube_has_one_point_per_stratum(self):
        points = latin_hypercube(10, 3, np.random.default_rng(0))
        for column in points.T:
            assert sorted(np.floor(column * 10).astype(int)) == list(range(10))

    def test_coverage_grows_with_samples(self):
        small = ScenarioSandbox(seed=2).generate("P30D", sample_count=8)
        large = ScenarioSandbox(seed=2).generate("P30D", sample_count=200)
        assert small.coverage_estimate <= 8 / 27
        assert large.coverage_estimate > small.coverage_estimate
        assert 0.0 <= large.coverage_estimate <= 1.0

    def test_coverage_of_empty_set(self):
        assert coverage_estimate(np.empty((0, 3))) == 0.0

    @pytest.mark.parametrize("strategy", ["triangular", "normal", "uniform"])
    def test_draws_respect_factor_floor(self, strategy):
        scenario_set = ScenarioSandbox(seed=4).generate("P90D", strategy=strategy, sample_count=60)
        assert scenario_set.strategy == strategy
        for s in scenario_set.scenarios:
            assert s.factors["demand"] >= BASE_FACTORS["demand"].floor
            assert s.factors["volatility"] >= 0.0

    def test_triangular_inverse_cdf_stays_in_range(self):
        u = np.linspace(0.0, 1.0, 11)
        values = inverse_cdf("triangular", u, BASE_FACTORS["demand"])
        assert values.min() == pytest.approx(0.85)
        assert values.max() == pytest.approx(1.15)

    def test_unknown_strategy_falls_back(self):
        scenario_set = ScenarioSandbox(seed=1).generate("P7D", strategy="monte-carlo", sample_count=12)
        assert scenario_set.strategy == "triangular"

    def test_invalid_sample_count(self):
        with pytest.raises(ValueError):
            ScenarioSandbox(seed=1).generate("P7D", sample_count=0)


class TestFactorRanges:
    def test_longer_horizons_widen_spreads(self):
        sandbox = ScenarioSandbox(seed=1)
        week = sandbox.factor_ranges("P7D")["demand"]
        quarter = sandbox.factor_ranges("P90D")["demand"]
        assert (week.low, week.high) == pytest.approx((0.85, 1.15))
        assert quarter.low < week.low
        assert quarter.high > week.high

    def test_forecast_band_centres_demand(self):
        ranges = ScenarioSandbox(seed=1).factor_ranges("P30D", demand_band=(0.7, 1.0, 1.4))
        demand = ranges["demand"]
        assert (demand.low, demand.mode, demand.high) == (0.7, 1.0, 1.4)

    def test_degenerate_band_is_ignored(self):
        ranges = ScenarioSandbox(seed=1).factor_ranges("P7D", demand_band=(0.0, 1.0, 1.0))
        assert ranges["demand"].low == pytest.approx(0.85)


def test_same_seed_reproduces_factors():
    first = ScenarioSandbox(seed=9).generate("P30D", sample_count=20)
    second = ScenarioSandbox(seed=9).generate("P30D", sample_count=20)
    assert [s.factors for s in first.scenarios] == [s.factors for s in second.scenarios]
    assert first.id != second.id
