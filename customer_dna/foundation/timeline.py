"""Customer purchase timelines and inter-purchase times (IPT).

A timeline is the ordered purchase history of one customer inside one scope.
IPT values are measured in fractional days; the first purchase has no
predecessor so its IPT is ``None``.
"""

from __future__ import annotations

import math
import statistics
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence

from customer_dna.foundation.transactions import Transaction

SECONDS_PER_DAY = 86_400.0


def days_between(start: datetime, end: datetime) -> float:
    """Fractional days from ``start`` to ``end``."""
    delta: timedelta = end - start
    return delta.total_seconds() / SECONDS_PER_DAY


@dataclass(frozen=True)
class CustomerTimeline:
    """Ordered purchase history for a single customer.

    Attributes
    ----------
    customer_id:
        Unique customer identifier
    timestamps:
        Purchase timestamps in ascending order
    amounts:
        Purchase amounts aligned with ``timestamps``
    ipt:
        Inter-purchase times in days aligned with ``timestamps``;
        ``ipt[0]`` is always ``None``
    """

    customer_id: str
    timestamps: tuple[datetime, ...]
    amounts: tuple[float, ...]
    ipt: tuple[Optional[float], ...]

    def __post_init__(self) -> None:
        if not self.timestamps:
            raise ValueError(
                f"Timeline requires at least one purchase (customer_id={self.customer_id})"
            )
        if not (len(self.timestamps) == len(self.amounts) == len(self.ipt)):
            raise ValueError(
                f"timestamps, amounts and ipt must align (customer_id={self.customer_id})"
            )
        if self.ipt[0] is not None:
            raise ValueError(
                f"First IPT must be undefined (customer_id={self.customer_id})"
            )

    @property
    def frequency(self) -> int:
        return len(self.timestamps)

    @property
    def first_purchase(self) -> datetime:
        return self.timestamps[0]

    @property
    def last_purchase(self) -> datetime:
        return self.timestamps[-1]

    @property
    def total_spent(self) -> float:
        return math.fsum(self.amounts)

    @property
    def intervals(self) -> list[float]:
        """Defined IPT values (length ``frequency - 1``)."""
        return [gap for gap in self.ipt if gap is not None]

    @property
    def ipt_mean(self) -> Optional[float]:
        """Mean IPT; undefined for single-purchase customers."""
        intervals = self.intervals
        if not intervals:
            return None
        return math.fsum(intervals) / len(intervals)

    @property
    def ipt_sd(self) -> Optional[float]:
        """Sample standard deviation of IPT; needs at least two intervals."""
        intervals = self.intervals
        if len(intervals) < 2:
            return None
        return statistics.stdev(intervals)

    def truncate(self, n_purchases: int) -> "CustomerTimeline":
        """Return the timeline of the first ``n_purchases`` purchases."""
        if not 1 <= n_purchases <= self.frequency:
            raise ValueError(
                f"n_purchases must be in [1, {self.frequency}], got {n_purchases} "
                f"(customer_id={self.customer_id})"
            )
        return CustomerTimeline(
            customer_id=self.customer_id,
            timestamps=self.timestamps[:n_purchases],
            amounts=self.amounts[:n_purchases],
            ipt=self.ipt[:n_purchases],
        )


def build_timelines(
    transactions: Sequence[Transaction],
) -> dict[str, CustomerTimeline]:
    """Group transactions into per-customer timelines.

    Transactions are sorted by ``(customer_id, timestamp)``; Python's sort is
    stable, so purchases with identical timestamps keep their input order and
    yield an IPT of 0.

    Parameters
    ----------
    transactions:
        Unordered transactions for a single scope

    Returns
    -------
    dict[str, CustomerTimeline]
        Timelines keyed by customer_id, in ascending customer_id order

    Examples
    --------
    >>> from datetime import datetime
    >>> txns = [
    ...     Transaction("C1", datetime(2024, 1, 11), 20.0, "A"),
    ...     Transaction("C1", datetime(2024, 1, 1), 10.0, "A"),
    ... ]
    >>> timeline = build_timelines(txns)["C1"]
    >>> timeline.ipt
    (None, 10.0)
    """
    ordered = sorted(transactions, key=lambda txn: (txn.customer_id, txn.timestamp))

    grouped: dict[str, list[Transaction]] = {}
    for txn in ordered:
        grouped.setdefault(txn.customer_id, []).append(txn)

    timelines: dict[str, CustomerTimeline] = {}
    for customer_id, purchases in grouped.items():
        timestamps = tuple(txn.timestamp for txn in purchases)
        ipt: list[Optional[float]] = [None]
        for previous, current in zip(timestamps, timestamps[1:]):
            ipt.append(days_between(previous, current))
        timelines[customer_id] = CustomerTimeline(
            customer_id=customer_id,
            timestamps=timestamps,
            amounts=tuple(float(txn.amount) for txn in purchases),
            ipt=tuple(ipt),
        )
    return timelines
