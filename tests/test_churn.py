"""Tests for still-alive probability estimation and back-testing."""

import math
from datetime import datetime, timedelta

import pytest

from customer_dna.foundation.timeline import build_timelines
from customer_dna.foundation.transactions import Transaction
from customer_dna.models.churn import (
    ChurnBacktest,
    ChurnConfig,
    ChurnEstimator,
    clamp_probability,
    survival_probability,
)
from customer_dna.models.population import (
    PopulationStatistics,
    estimate_population_statistics,
)

BASE = datetime(2024, 1, 1)


def _timeline(customer_id, days):
    txns = [Transaction(customer_id, BASE + timedelta(days=d), 10.0, "A") for d in days]
    return build_timelines(txns)[customer_id]


@pytest.fixture
def population():
    return PopulationStatistics(expected_cycle_days=10.0, ipt_cv=0.5, repeat_customers=5)


class TestSurvivalProbability:
    """Test the Gamma survival function and its degenerate cases."""

    def test_exponential_at_mean(self):
        """sd == mean is the exponential distribution."""
        assert survival_probability(10.0, 10.0, 10.0) == pytest.approx(math.exp(-1))

    def test_zero_recency_is_alive(self):
        assert survival_probability(0.0, 10.0, 5.0) == pytest.approx(1.0)

    def test_decreasing_in_recency(self):
        values = [survival_probability(r, 10.0, 4.0) for r in range(0, 60, 5)]
        assert all(a >= b for a, b in zip(values, values[1:]))
        assert all(0.0 <= v <= 1.0 for v in values)

    @pytest.mark.parametrize("sd", [None, 0.0])
    def test_degenerate_spread_is_step_function(self, sd):
        assert survival_probability(10.0, 10.0, sd) == 1.0
        assert survival_probability(10.5, 10.0, sd) == 0.0

    @pytest.mark.parametrize("mean", [None, 0.0])
    def test_degenerate_mean(self, mean):
        assert survival_probability(0.0, mean, None) == 1.0
        assert survival_probability(3.0, mean, None) == 0.0

    def test_negative_recency_raises(self):
        with pytest.raises(ValueError, match="recency_days cannot be negative"):
            survival_probability(-1.0, 10.0, 5.0)

    def test_clamp_probability(self):
        assert clamp_probability(1.2) == 1.0
        assert clamp_probability(-0.1) == 0.0
        assert math.isnan(clamp_probability(math.nan))


class TestChurnConfig:
    def test_defaults(self):
        config = ChurnConfig()
        assert config.default_probability == 0.5
        assert config.decision_threshold == 0.5
        assert config.backtest_window_cycles == 2.0
        assert config.backtest_horizon_days is None

    def test_invalid_default_probability(self):
        with pytest.raises(ValueError, match="default_probability"):
            ChurnConfig(default_probability=1.5)

    def test_invalid_threshold(self):
        with pytest.raises(ValueError, match="decision_threshold"):
            ChurnConfig(decision_threshold=1.0)

    def test_invalid_window(self):
        with pytest.raises(ValueError, match="backtest_window_cycles"):
            ChurnConfig(backtest_window_cycles=0)

    @pytest.mark.parametrize("horizon", [0.0, -5.0, float("nan")])
    def test_invalid_horizon(self, horizon):
        with pytest.raises(ValueError, match="backtest_horizon_days"):
            ChurnConfig(backtest_horizon_days=horizon)


class TestChurnBacktest:
    def test_accuracy(self):
        assert ChurnBacktest(evaluated=4, correct=3).accuracy == 0.75

    def test_accuracy_undefined_without_evaluations(self):
        assert ChurnBacktest(evaluated=0, correct=0, excluded=3).accuracy is None

    def test_correct_cannot_exceed_evaluated(self):
        with pytest.raises(ValueError, match="cannot exceed evaluated"):
            ChurnBacktest(evaluated=1, correct=2)

    def test_combine_pools_counts(self):
        combined = ChurnBacktest.combine(
            [
                ChurnBacktest(evaluated=2, correct=2, excluded=1, brier_score=0.1),
                ChurnBacktest(evaluated=6, correct=3, excluded=0, brier_score=0.3),
            ]
        )
        assert combined.evaluated == 8
        assert combined.correct == 5
        assert combined.excluded == 1
        assert combined.accuracy == pytest.approx(5 / 8)
        assert combined.brier_score == pytest.approx((0.2 + 1.8) / 8)

    def test_combine_empty(self):
        combined = ChurnBacktest.combine([])
        assert combined.accuracy is None
        assert combined.brier_score is None


class TestChurnEstimator:
    """Test per-customer probabilities and the back-test."""

    def test_repeat_customer_uses_individual_cycle(self, population):
        estimator = ChurnEstimator(population)
        timeline = _timeline("C1", [0, 10, 30])
        expected = survival_probability(5.0, timeline.ipt_mean, timeline.ipt_sd)
        assert estimator.probability_alive(timeline, 5.0) == pytest.approx(expected)

    def test_single_purchase_uses_population_fallback(self, population):
        estimator = ChurnEstimator(population)
        probability = estimator.probability_alive(_timeline("C1", [0]), 10.0)
        assert probability == pytest.approx(survival_probability(10.0, 10.0, 5.0))

    def test_single_purchase_without_fallback_gets_default(self):
        population = PopulationStatistics(
            expected_cycle_days=10.0,
            ipt_cv=0.5,
            repeat_customers=5,
            use_population_fallback=False,
        )
        estimator = ChurnEstimator(population, ChurnConfig(default_probability=0.3))
        assert estimator.probability_alive(_timeline("C1", [0]), 10.0) == 0.3

    def test_backtest_horizon_from_population_cycle(self, population):
        assert ChurnEstimator(population).backtest_horizon() == 20.0
        fixed = ChurnEstimator(population, ChurnConfig(backtest_horizon_days=45.0))
        assert fixed.backtest_horizon() == 45.0

    def test_backtest_scores_alive_and_churned_predictions(self, population):
        """Recency at the cutoff separates returning buyers from lapsed ones.

        Reference is day 100 and the horizon is 20 days, so purchases from
        day 80 onwards are hidden.
        """
        estimator = ChurnEstimator(population)
        backtest = estimator.backtest(
            [
                # Bought just before the cutoff and came back
                _timeline("ALIVE1", [50, 60, 72, 79, 95]),
                _timeline("ALIVE2", [45, 55, 66, 75, 90]),
                # Silent for several cycles and stayed silent
                _timeline("LAPSED1", [0, 10, 21, 30]),
                _timeline("LAPSED2", [20, 30, 39, 50]),
                # Silent for five cycles but returned anyway
                _timeline("LATE", [0, 10, 20, 30, 90]),
                _timeline("SINGLE", [10]),
                # No purchase before the cutoff
                _timeline("NEWCOMER", [85, 95]),
            ],
            BASE + timedelta(days=100),
        )
        assert backtest.evaluated == 5
        assert backtest.correct == 4
        assert backtest.excluded == 2
        assert backtest.accuracy == pytest.approx(0.8)
        # Confident on all four correct calls, fully wrong on LATE
        assert backtest.brier_score == pytest.approx(0.2, abs=1e-3)

    def test_backtest_outcome_depends_on_recency(self, population):
        """Identical cycles, different silence at the cutoff, different calls."""
        estimator = ChurnEstimator(population)
        reference = BASE + timedelta(days=100)
        recent = estimator.backtest([_timeline("R", [49, 59, 70, 78, 92])], reference)
        stale = estimator.backtest([_timeline("S", [9, 19, 30, 38, 92])], reference)
        # Both returned; only the recent buyer is predicted alive
        assert recent.correct == 1
        assert stale.correct == 0

    def test_backtest_population_uses_histories_only(self):
        """Held-out intervals never reach the back-test population.

        Every customer's only interval straddles the cutoff, so the pre-cutoff
        histories contain no cycle at all.
        """
        timelines = [_timeline(f"C{i}", [0, 100]) for i in range(10)]
        population = estimate_population_statistics(timelines)
        assert population.expected_cycle_days == 100.0

        estimator = ChurnEstimator(population, ChurnConfig(backtest_horizon_days=50.0))
        backtest = estimator.backtest(timelines, BASE + timedelta(days=100))
        assert backtest.evaluated == 0
        assert backtest.excluded == 10
        assert backtest.accuracy is None

    def test_backtest_excludes_customers_without_cycle(self):
        population = PopulationStatistics(
            expected_cycle_days=None,
            ipt_cv=1.0,
            repeat_customers=0,
            use_population_fallback=False,
        )
        backtest = ChurnEstimator(population).backtest(
            [_timeline("C1", [0, 10])], BASE + timedelta(days=10)
        )
        assert backtest.evaluated == 0
        assert backtest.excluded == 1
        assert backtest.accuracy is None

    def test_backtest_is_deterministic(self, population):
        timelines = [_timeline(f"C{i}", [0, 7 + i, 20 + 2 * i, 45]) for i in range(5)]
        estimator = ChurnEstimator(population)
        reference = BASE + timedelta(days=50)
        assert estimator.backtest(timelines, reference) == estimator.backtest(
            timelines, reference
        )
