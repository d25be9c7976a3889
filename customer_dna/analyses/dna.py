"""Customer DNA analysis for a single scope.

Combines the timeline, population, lifecycle, churn and value components into
one validated profile per customer:

- recency / frequency / monetary and total spend
- inter-purchase-time statistics
- NES lifecycle status
- still-alive probability (with a back-tested accuracy for the scope)
- heuristic CLV, value segment and loyalty tier

The analysis is a pure function of (transactions, reference time, config);
running it twice on the same input yields identical profiles.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Sequence

from customer_dna.config import DNAConfig
from customer_dna.exceptions import (
    ComputationError,
    DegenerateCustomerError,
    ScopeError,
)
from customer_dna.foundation.timeline import (
    CustomerTimeline,
    build_timelines,
    days_between,
)
from customer_dna.foundation.transactions import (
    ALL_SCOPES,
    Transaction,
    check_timezones,
)
from customer_dna.models.churn import ChurnBacktest, ChurnEstimator
from customer_dna.models.lifecycle import NESStatus, classify_nes, nes_ratio
from customer_dna.models.population import (
    PopulationStatistics,
    estimate_population_statistics,
)
from customer_dna.models.value import (
    LOYALTY_TIERS,
    VALUE_SEGMENTS,
    ValueSegmentThresholds,
    assign_loyalty_tier,
    calculate_clv,
    value_segment_thresholds,
)

logger = logging.getLogger(__name__)

# Stable output column names, in order
PROFILE_COLUMNS = (
    "customer_id",
    "scope_key",
    "recency",
    "frequency",
    "monetary",
    "total_spent",
    "IPT_mean",
    "IPT_sd",
    "NES_status",
    "churn_probability_complement",
    "CLV",
    "value_segment",
    "loyalty_tier",
)

EXTENDED_PROFILE_COLUMNS = PROFILE_COLUMNS + (
    "first_purchase",
    "last_purchase",
    "NES_ratio",
)

# monetary × frequency must reproduce total_spent within this tolerance
_TOTAL_SPENT_REL_TOL = 1e-9
_TOTAL_SPENT_ABS_TOL = 1e-6


@dataclass(frozen=True)
class CustomerDNAProfile:
    """Behavioural profile of one customer within one scope.

    Attributes
    ----------
    customer_id:
        Unique customer identifier
    scope_key:
        Scope the profile was computed for
    recency:
        Days from the last purchase to the reference time
    frequency:
        Number of purchases
    monetary:
        Mean purchase amount
    total_spent:
        Sum of purchase amounts
    ipt_mean:
        Mean inter-purchase time in days (None for single-purchase customers)
    ipt_sd:
        Sample standard deviation of inter-purchase time (None with fewer
        than two intervals)
    nes_status:
        Lifecycle status
    churn_probability_complement:
        Probability that the customer is still active
    clv:
        Heuristic customer lifetime value
    value_segment:
        Quartile segment of the scope's value distribution
    loyalty_tier:
        Platinum / Gold / Silver / Bronze
    first_purchase, last_purchase:
        First and most recent purchase timestamps
    nes_ratio:
        Recency in expected cycles (None when the cycle is undefined)
    """

    customer_id: str
    scope_key: str
    recency: float
    frequency: int
    monetary: float
    total_spent: float
    ipt_mean: Optional[float]
    ipt_sd: Optional[float]
    nes_status: NESStatus
    churn_probability_complement: float
    clv: float
    value_segment: str
    loyalty_tier: str
    first_purchase: datetime
    last_purchase: datetime
    nes_ratio: Optional[float] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "nes_status", NESStatus(self.nes_status))

        if self.frequency < 1:
            raise ValueError(
                f"Frequency must be positive: {self.frequency} (customer_id={self.customer_id})"
            )
        if not math.isfinite(self.recency) or self.recency < 0:
            raise ValueError(
                f"Recency must be non-negative and finite: {self.recency} "
                f"(customer_id={self.customer_id})"
            )
        if self.ipt_mean is None and self.frequency != 1:
            raise ValueError(
                f"IPT_mean is undefined but frequency is {self.frequency} "
                f"(customer_id={self.customer_id})"
            )
        if self.frequency == 1:
            if self.ipt_mean is not None:
                raise ValueError(
                    f"IPT_mean must be undefined for a single purchase "
                    f"(customer_id={self.customer_id})"
                )
            if self.nes_status is not NESStatus.NEW:
                raise ValueError(
                    f"Single-purchase customer must be N, got {self.nes_status.value} "
                    f"(customer_id={self.customer_id})"
                )
        if not 0 <= self.churn_probability_complement <= 1:
            raise ValueError(
                f"churn_probability_complement must be in [0, 1]: "
                f"{self.churn_probability_complement} (customer_id={self.customer_id})"
            )
        if not math.isfinite(self.clv) or self.clv < 0:
            raise ValueError(
                f"CLV must be non-negative and finite: {self.clv} (customer_id={self.customer_id})"
            )
        if not math.isclose(
            self.monetary * self.frequency,
            self.total_spent,
            rel_tol=_TOTAL_SPENT_REL_TOL,
            abs_tol=_TOTAL_SPENT_ABS_TOL,
        ):
            raise ValueError(
                f"monetary × frequency ({self.monetary * self.frequency}) must equal "
                f"total_spent ({self.total_spent}) (customer_id={self.customer_id})"
            )
        if self.value_segment not in VALUE_SEGMENTS:
            raise ValueError(
                f"Unknown value segment: {self.value_segment!r} (customer_id={self.customer_id})"
            )
        if self.loyalty_tier not in LOYALTY_TIERS:
            raise ValueError(
                f"Unknown loyalty tier: {self.loyalty_tier!r} (customer_id={self.customer_id})"
            )
        if self.last_purchase < self.first_purchase:
            raise ValueError(
                f"last_purchase precedes first_purchase (customer_id={self.customer_id})"
            )

    def as_dict(self, extended: bool = False) -> dict[str, Any]:
        """Row keyed by the stable output column names."""
        row: dict[str, Any] = {
            "customer_id": self.customer_id,
            "scope_key": self.scope_key,
            "recency": self.recency,
            "frequency": self.frequency,
            "monetary": self.monetary,
            "total_spent": self.total_spent,
            "IPT_mean": self.ipt_mean,
            "IPT_sd": self.ipt_sd,
            "NES_status": self.nes_status.value,
            "churn_probability_complement": self.churn_probability_complement,
            "CLV": self.clv,
            "value_segment": self.value_segment,
            "loyalty_tier": self.loyalty_tier,
        }
        if extended:
            row["first_purchase"] = self.first_purchase
            row["last_purchase"] = self.last_purchase
            row["NES_ratio"] = self.nes_ratio
        return row


@dataclass(frozen=True)
class CustomerFailure:
    """A customer skipped because a per-customer computation failed."""

    customer_id: str
    scope_key: str
    error_type: str
    message: str


@dataclass(frozen=True)
class DNAAnalysisResult:
    """Profiles and scope-level diagnostics for one scope.

    Attributes
    ----------
    scope_key:
        Analysed scope
    reference_time:
        "Now" used for every recency in the scope
    profiles:
        One profile per successfully analysed customer, by customer_id
    population:
        Population fallback statistics of the scope
    churn_backtest:
        Back-test of the still-alive estimates
    value_thresholds:
        Quartile thresholds used for value segments in this run
    failures:
        Customers that were skipped
    """

    scope_key: str
    reference_time: datetime
    profiles: tuple[CustomerDNAProfile, ...]
    population: PopulationStatistics
    churn_backtest: ChurnBacktest
    value_thresholds: ValueSegmentThresholds
    failures: tuple[CustomerFailure, ...] = ()

    @property
    def churn_accuracy(self) -> Optional[float]:
        return self.churn_backtest.accuracy

    @property
    def customers_processed(self) -> int:
        return len(self.profiles)

    @property
    def customers_failed(self) -> int:
        return len(self.failures)


@dataclass(frozen=True)
class _CustomerMetrics:
    """First-pass values; segments need the whole scope before they exist."""

    timeline: CustomerTimeline
    recency: float
    nes_status: NESStatus
    nes_ratio: Optional[float]
    alive: float
    clv: float


def _expected_cycle_or_none(
    population: PopulationStatistics, timeline: CustomerTimeline
) -> Optional[float]:
    try:
        return population.expected_cycle(timeline)
    except DegenerateCustomerError:
        return None


def _customer_metrics(
    timeline: CustomerTimeline,
    reference_time: datetime,
    population: PopulationStatistics,
    estimator: ChurnEstimator,
    config: DNAConfig,
) -> _CustomerMetrics:
    customer_id = timeline.customer_id
    recency = days_between(timeline.last_purchase, reference_time)
    if recency < 0:
        raise ComputationError(
            customer_id,
            f"Last purchase {timeline.last_purchase.isoformat()} is after the "
            f"reference time {reference_time.isoformat()} (customer_id={customer_id})",
        )

    total_spent = timeline.total_spent
    if not math.isfinite(total_spent):
        raise ComputationError(
            customer_id, f"Non-finite total_spent (customer_id={customer_id})"
        )

    cycle = _expected_cycle_or_none(population, timeline)
    status = classify_nes(timeline.frequency, recency, cycle)
    alive = estimator.probability_alive(timeline, recency)
    clv = calculate_clv(total_spent, timeline.frequency, recency, config.clv)
    if not math.isfinite(clv):
        raise ComputationError(customer_id, f"Non-finite CLV (customer_id={customer_id})")

    return _CustomerMetrics(
        timeline=timeline,
        recency=recency,
        nes_status=status,
        nes_ratio=nes_ratio(recency, cycle),
        alive=alive,
        clv=clv,
    )


def analyze_customer_dna(
    transactions: Sequence[Transaction],
    reference_time: datetime,
    config: DNAConfig | None = None,
    scope_key: str = ALL_SCOPES,
) -> DNAAnalysisResult:
    """Compute DNA profiles for every customer in one scope.

    Parameters
    ----------
    transactions:
        Transactions already restricted to ``scope_key``
    reference_time:
        "Now" for recency calculations
    config:
        Run configuration; defaults to ``DNAConfig()``
    scope_key:
        Scope label written onto every profile

    Returns
    -------
    DNAAnalysisResult

    Raises
    ------
    ScopeError:
        If the scope has no transactions or every customer failed
    ValueError:
        If timezone-aware and naive datetimes are mixed

    Examples
    --------
    >>> from datetime import datetime
    >>> txns = [
    ...     Transaction("C1", datetime(2024, 1, 1), 10.0, "A"),
    ...     Transaction("C1", datetime(2024, 1, 11), 10.0, "A"),
    ...     Transaction("C1", datetime(2024, 1, 21), 10.0, "A"),
    ... ]
    >>> result = analyze_customer_dna(txns, datetime(2024, 1, 26), scope_key="A")
    >>> result.profiles[0].nes_status.value
    'E0'
    """
    config = config or DNAConfig()
    if not transactions:
        raise ScopeError(scope_key, f"No transactions in scope {scope_key!r}")
    check_timezones(transactions, reference_time)

    timelines = build_timelines(transactions)
    population = estimate_population_statistics(
        timelines.values(),
        method=config.population_method,
        use_population_fallback=config.use_population_fallback,
        fallback_cycle_days=config.fallback_cycle_days,
    )
    estimator = ChurnEstimator(population, config.churn)

    metrics: list[_CustomerMetrics] = []
    failures: list[CustomerFailure] = []
    for customer_id, timeline in timelines.items():
        try:
            metrics.append(
                _customer_metrics(timeline, reference_time, population, estimator, config)
            )
        except (ComputationError, ValueError) as e:
            logger.warning("Skipping customer %s in scope %s: %s", customer_id, scope_key, e)
            failures.append(
                CustomerFailure(
                    customer_id=customer_id,
                    scope_key=scope_key,
                    error_type=type(e).__name__,
                    message=str(e),
                )
            )

    if not metrics:
        raise ScopeError(
            scope_key,
            f"All {len(failures)} customers in scope {scope_key!r} failed",
        )

    if config.segment_basis == "CLV":
        basis_values = [m.clv for m in metrics]
    else:
        basis_values = [m.timeline.total_spent for m in metrics]
    thresholds = value_segment_thresholds(basis_values, basis=config.segment_basis)

    profiles = []
    for m, basis_value in zip(metrics, basis_values):
        timeline = m.timeline
        total_spent = timeline.total_spent
        profiles.append(
            CustomerDNAProfile(
                customer_id=timeline.customer_id,
                scope_key=scope_key,
                recency=m.recency,
                frequency=timeline.frequency,
                monetary=total_spent / timeline.frequency,
                total_spent=total_spent,
                ipt_mean=timeline.ipt_mean,
                ipt_sd=timeline.ipt_sd,
                nes_status=m.nes_status,
                churn_probability_complement=m.alive,
                clv=m.clv,
                value_segment=thresholds.segment(basis_value),
                loyalty_tier=assign_loyalty_tier(timeline.frequency, m.nes_status),
                first_purchase=timeline.first_purchase,
                last_purchase=timeline.last_purchase,
                nes_ratio=m.nes_ratio,
            )
        )

    backtest = estimator.backtest(timelines.values(), reference_time)

    logger.info(
        "Scope %s: %d profiles, %d failures, churn accuracy %s",
        scope_key,
        len(profiles),
        len(failures),
        backtest.accuracy,
    )

    return DNAAnalysisResult(
        scope_key=scope_key,
        reference_time=reference_time,
        profiles=tuple(profiles),
        population=population,
        churn_backtest=backtest,
        value_thresholds=thresholds,
        failures=tuple(failures),
    )
