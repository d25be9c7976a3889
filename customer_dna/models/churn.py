"""Churn probability ("still alive") estimation with back-testing.

Each customer's inter-purchase time is modelled as a Gamma distribution whose
mean and standard deviation match the customer's own IPT statistics (or the
population fallback). The probability that a silent customer is still an
active relationship is the survival function of that distribution at the
current recency:

    P(alive | recency) = P(IPT > recency) = gamma.sf(recency, shape, scale)

    shape = mean² / sd²,   scale = sd² / mean

A shape of 1 is the memoryless exponential; regular buyers (small sd) get a
steep drop once recency passes their usual cycle.

The back-test is a temporal holdout. Purchases in the final horizon before the
reference time (``backtest_window_cycles`` population cycles unless
``backtest_horizon_days`` is set) are hidden, which removes at least the last
interval of every customer who bought in that window. Cycle, spread and the
population fallback are re-estimated from the remaining histories, the
still-alive probability is evaluated at each customer's recency on the cutoff
date, and the prediction is compared with whether the customer actually
purchased again before the reference time.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from scipy import stats

from customer_dna.exceptions import ComputationError, DegenerateCustomerError
from customer_dna.foundation.timeline import CustomerTimeline, days_between
from customer_dna.models.population import (
    PopulationStatistics,
    estimate_population_statistics,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChurnConfig:
    """Configuration for churn estimation.

    Attributes
    ----------
    default_probability:
        Estimate used when a customer has no cycle and no population fallback
    decision_threshold:
        Return probability at or above which the back-test predicts a return
    backtest_window_cycles:
        Back-test horizon in multiples of the population cycle (2.0 = return
        before crossing into S2)
    backtest_horizon_days:
        Fixed back-test horizon in days; overrides ``backtest_window_cycles``
    """

    default_probability: float = 0.5
    decision_threshold: float = 0.5
    backtest_window_cycles: float = 2.0
    backtest_horizon_days: Optional[float] = None

    def __post_init__(self) -> None:
        if not 0 <= self.default_probability <= 1:
            raise ValueError(
                f"default_probability must be between 0 and 1, got {self.default_probability}"
            )
        if not 0 < self.decision_threshold < 1:
            raise ValueError(
                f"decision_threshold must be between 0 and 1 (exclusive), got {self.decision_threshold}"
            )
        if self.backtest_window_cycles <= 0:
            raise ValueError(
                f"backtest_window_cycles must be positive, got {self.backtest_window_cycles}"
            )
        if self.backtest_horizon_days is not None and not (
            math.isfinite(self.backtest_horizon_days) and self.backtest_horizon_days > 0
        ):
            raise ValueError(
                f"backtest_horizon_days must be positive, got {self.backtest_horizon_days}"
            )


def clamp_probability(value: float) -> float:
    """Clamp a probability into [0, 1]; NaN passes through for the caller to reject."""
    if math.isnan(value):
        return value
    return min(1.0, max(0.0, value))


def survival_probability(
    recency_days: float,
    mean_days: Optional[float],
    sd_days: Optional[float],
) -> float:
    """Probability that no purchase has happened yet after ``recency_days``.

    Parameters
    ----------
    recency_days:
        Days since the last purchase
    mean_days:
        Mean inter-purchase time. A zero or undefined mean is a point mass at
        zero: alive only when recency is zero.
    sd_days:
        Standard deviation of inter-purchase time. A zero or undefined spread
        is a step function: alive while ``recency_days <= mean_days``.

    Examples
    --------
    >>> round(survival_probability(10.0, 10.0, 10.0), 4)  # exponential
    0.3679
    >>> survival_probability(5.0, 10.0, 0.0)
    1.0
    """
    if recency_days < 0:
        raise ValueError(f"recency_days cannot be negative: {recency_days}")

    if mean_days is None or not math.isfinite(mean_days) or mean_days <= 0:
        return 1.0 if recency_days == 0 else 0.0

    if sd_days is None or not math.isfinite(sd_days) or sd_days <= 0:
        return 1.0 if recency_days <= mean_days else 0.0

    shape = (mean_days / sd_days) ** 2
    scale = sd_days**2 / mean_days
    return clamp_probability(float(stats.gamma.sf(recency_days, a=shape, scale=scale)))


@dataclass(frozen=True)
class ChurnBacktest:
    """Back-test outcome for one population.

    Attributes
    ----------
    evaluated:
        Repeat customers with a pre-cutoff history that could be scored
    correct:
        Customers whose return / no-return prediction matched the outcome
    excluded:
        Customers skipped (single purchase, no purchase before the cutoff,
        or no usable cycle)
    brier_score:
        Mean squared error of the still-alive probability against the
        observed return, None when nothing was evaluated
    """

    evaluated: int
    correct: int
    excluded: int = 0
    brier_score: Optional[float] = None

    def __post_init__(self) -> None:
        if self.evaluated < 0 or self.correct < 0 or self.excluded < 0:
            raise ValueError("Back-test counts cannot be negative")
        if self.correct > self.evaluated:
            raise ValueError(
                f"correct ({self.correct}) cannot exceed evaluated ({self.evaluated})"
            )

    @property
    def accuracy(self) -> Optional[float]:
        if self.evaluated == 0:
            return None
        return self.correct / self.evaluated

    @classmethod
    def combine(cls, backtests: Iterable["ChurnBacktest"]) -> "ChurnBacktest":
        """Pool several back-tests, weighting the Brier score by evaluated count."""
        evaluated = correct = excluded = 0
        weighted_brier = 0.0
        for backtest in backtests:
            evaluated += backtest.evaluated
            correct += backtest.correct
            excluded += backtest.excluded
            if backtest.brier_score is not None:
                weighted_brier += backtest.brier_score * backtest.evaluated
        return cls(
            evaluated=evaluated,
            correct=correct,
            excluded=excluded,
            brier_score=weighted_brier / evaluated if evaluated else None,
        )


class ChurnEstimator:
    """Estimate still-alive probabilities and back-test them.

    Examples
    --------
    >>> from datetime import datetime, timedelta
    >>> from customer_dna.foundation.timeline import build_timelines
    >>> from customer_dna.foundation.transactions import Transaction
    >>> start = datetime(2024, 1, 1)
    >>> transactions = [
    ...     Transaction(cid, start + timedelta(days=d), 10.0, "A")
    ...     for cid, days in (("C1", (0, 10, 19, 30)), ("C2", (0, 11, 20)))
    ...     for d in days
    ... ]
    >>> timelines = build_timelines(transactions)
    >>> population = estimate_population_statistics(timelines.values())
    >>> estimator = ChurnEstimator(population)
    >>> round(estimator.probability_alive(timelines["C1"], 0.0), 2)
    1.0
    >>> estimator.backtest(timelines.values(), start + timedelta(days=60)).evaluated
    2
    """

    def __init__(
        self,
        population: PopulationStatistics,
        config: Optional[ChurnConfig] = None,
    ) -> None:
        self.population = population
        self.config = config or ChurnConfig()

    def _distribution(self, timeline: CustomerTimeline) -> tuple[float, Optional[float]]:
        """(mean, sd) of the customer's IPT distribution, with fallback."""
        cycle = self.population.expected_cycle(timeline)
        return cycle, self.population.ipt_spread(timeline, cycle)

    def probability_alive(self, timeline: CustomerTimeline, recency_days: float) -> float:
        """Probability the customer is still active at ``recency_days``.

        Raises
        ------
        ComputationError:
            If the model produces a non-finite probability
        """
        try:
            mean, sd = self._distribution(timeline)
        except DegenerateCustomerError:
            return self.config.default_probability

        probability = survival_probability(recency_days, mean, sd)
        if not math.isfinite(probability):
            raise ComputationError(
                timeline.customer_id,
                f"Non-finite alive probability for customer {timeline.customer_id}",
            )
        return probability

    def backtest_horizon(self) -> Optional[float]:
        """Length of the hidden window in days, None when it cannot be sized."""
        if self.config.backtest_horizon_days is not None:
            return self.config.backtest_horizon_days
        cycle = self.population.expected_cycle_days
        if cycle is None:
            return None
        return self.config.backtest_window_cycles * cycle

    def backtest(
        self, timelines: Iterable[CustomerTimeline], reference_time: datetime
    ) -> ChurnBacktest:
        """Back-test still-alive predictions against a hidden final horizon.

        Parameters
        ----------
        timelines:
            Full timelines of the scope
        reference_time:
            End of the observation period; the cutoff is ``reference_time``
            minus :meth:`backtest_horizon`

        Returns
        -------
        ChurnBacktest
            Customers are excluded when they bought only once, had no purchase
            before the cutoff, or have no usable cycle in their history.
        """
        timelines = list(timelines)
        horizon = self.backtest_horizon()
        if horizon is None:
            logger.warning("Churn back-test skipped: no population cycle to size the horizon")
            return ChurnBacktest(evaluated=0, correct=0, excluded=len(timelines))

        cutoff = reference_time - timedelta(days=horizon)
        histories: dict[str, CustomerTimeline] = {}
        for timeline in timelines:
            observed = sum(1 for ts in timeline.timestamps if ts < cutoff)
            if observed:
                histories[timeline.customer_id] = timeline.truncate(observed)

        # Fallback values come from the histories only, never from hidden purchases
        history_population = estimate_population_statistics(
            histories.values(),
            method=self.population.method,
            use_population_fallback=self.population.use_population_fallback,
        )
        history_estimator = ChurnEstimator(history_population, self.config)

        evaluated = 0
        correct = 0
        excluded = 0
        squared_errors = 0.0
        threshold = self.config.decision_threshold

        for timeline in timelines:
            history = histories.get(timeline.customer_id)
            if timeline.frequency < 2 or history is None:
                excluded += 1
                continue
            try:
                mean, sd = history_estimator._distribution(history)
            except DegenerateCustomerError:
                excluded += 1
                continue

            recency = days_between(history.last_purchase, cutoff)
            p_alive = survival_probability(recency, mean, sd)
            if not math.isfinite(p_alive):
                excluded += 1
                continue

            returned = any(
                cutoff <= ts <= reference_time
                for ts in timeline.timestamps[history.frequency :]
            )
            predicted = p_alive >= threshold
            evaluated += 1
            correct += int(predicted == returned)
            squared_errors += (p_alive - float(returned)) ** 2

        backtest = ChurnBacktest(
            evaluated=evaluated,
            correct=correct,
            excluded=excluded,
            brier_score=squared_errors / evaluated if evaluated else None,
        )
        logger.info(
            "Churn back-test (cutoff %s): %d evaluated, %d correct, %d excluded",
            cutoff.isoformat(),
            evaluated,
            correct,
            excluded,
        )
        return backtest
