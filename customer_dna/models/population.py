"""Population-level fallback statistics for inter-purchase times.

Single-purchase customers (and repeat customers whose purchases collapse to
zero-length intervals) have no usable individual purchase cycle. For them the
engine borrows the population's typical cycle, estimated from customers with
at least two purchases.

Two quantities are estimated:

- ``expected_cycle_days``: median (or mean) of individual IPT means
- ``ipt_cv``: median coefficient of variation (IPT sd / IPT mean), used to
  derive a spread for customers whose individual spread is undefined or zero
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, Literal, Optional

import numpy as np

from customer_dna.exceptions import DegenerateCustomerError
from customer_dna.foundation.timeline import CustomerTimeline

logger = logging.getLogger(__name__)

# Coefficient of variation of an exponential distribution
DEFAULT_IPT_CV = 1.0


@dataclass(frozen=True)
class PopulationStatistics:
    """Population fallback parameters for one analysis scope.

    Attributes
    ----------
    expected_cycle_days:
        Population purchase cycle in days, or None when the population has
        no repeat customers and no configured fallback
    ipt_cv:
        Population coefficient of variation of IPT
    repeat_customers:
        Number of customers that contributed to ``expected_cycle_days``
    method:
        Aggregation used for ``expected_cycle_days`` ("median" or "mean")
    use_population_fallback:
        Whether per-customer lookups may fall back to population values
    """

    expected_cycle_days: Optional[float]
    ipt_cv: float
    repeat_customers: int
    method: str = "median"
    use_population_fallback: bool = True

    def __post_init__(self) -> None:
        if self.expected_cycle_days is not None and not (
            math.isfinite(self.expected_cycle_days) and self.expected_cycle_days > 0
        ):
            raise ValueError(
                f"expected_cycle_days must be positive and finite: {self.expected_cycle_days}"
            )
        if not math.isfinite(self.ipt_cv) or self.ipt_cv < 0:
            raise ValueError(f"ipt_cv must be non-negative and finite: {self.ipt_cv}")
        if self.repeat_customers < 0:
            raise ValueError(
                f"repeat_customers cannot be negative: {self.repeat_customers}"
            )

    @property
    def fallback_available(self) -> bool:
        return self.use_population_fallback and self.expected_cycle_days is not None

    def expected_cycle(self, timeline: CustomerTimeline) -> float:
        """Expected purchase cycle (days) for a customer.

        Returns the customer's own IPT mean when it is defined and positive,
        otherwise the population cycle when the fallback is enabled.

        Raises
        ------
        DegenerateCustomerError:
            If the customer has no individual cycle and no fallback applies
        """
        individual = timeline.ipt_mean
        if individual is not None and individual > 0:
            return individual
        if self.fallback_available:
            return float(self.expected_cycle_days)
        if individual is not None:
            # Same-day repeat purchases with fallback disabled
            return individual
        raise DegenerateCustomerError(timeline.customer_id)

    def ipt_spread(
        self, timeline: CustomerTimeline, expected_cycle: float
    ) -> Optional[float]:
        """Spread (sd, days) of the customer's IPT distribution.

        Uses the individual sample sd when positive; otherwise scales the
        population coefficient of variation by ``expected_cycle`` when the
        fallback is enabled. Returns None when neither is available.
        """
        individual = timeline.ipt_sd
        if individual is not None and individual > 0 and math.isfinite(individual):
            return individual
        if self.use_population_fallback:
            return self.ipt_cv * expected_cycle
        return individual


def estimate_population_statistics(
    timelines: Iterable[CustomerTimeline],
    method: Literal["median", "mean"] = "median",
    use_population_fallback: bool = True,
    fallback_cycle_days: Optional[float] = None,
) -> PopulationStatistics:
    """Estimate population fallback statistics from customer timelines.

    Parameters
    ----------
    timelines:
        Timelines for every customer in the scope
    method:
        "median" (default) or "mean" of individual IPT means
    use_population_fallback:
        Whether per-customer lookups may use the population values
    fallback_cycle_days:
        Cycle to use when no customer has a positive IPT mean

    Returns
    -------
    PopulationStatistics
    """
    if method not in ("median", "mean"):
        raise ValueError(f"method must be 'median' or 'mean', got {method!r}")

    cycle_means: list[float] = []
    cvs: list[float] = []
    for timeline in timelines:
        mean = timeline.ipt_mean
        if mean is None or mean <= 0:
            continue
        cycle_means.append(mean)
        sd = timeline.ipt_sd
        if sd is not None and sd > 0:
            cvs.append(sd / mean)

    if cycle_means:
        values = np.asarray(cycle_means, dtype=float)
        expected_cycle = float(np.median(values) if method == "median" else values.mean())
    else:
        expected_cycle = fallback_cycle_days
        logger.warning(
            "No repeat customers with positive IPT; population cycle falls back to %s",
            fallback_cycle_days,
        )

    ipt_cv = float(np.median(np.asarray(cvs, dtype=float))) if cvs else DEFAULT_IPT_CV

    return PopulationStatistics(
        expected_cycle_days=expected_cycle,
        ipt_cv=ipt_cv,
        repeat_customers=len(cycle_means),
        method=method,
        use_population_fallback=use_population_fallback,
    )
