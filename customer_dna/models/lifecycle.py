"""NES lifecycle classification (New / Established / Sleeping 1-3).

Dormancy escalates in whole multiples of the customer's own expected purchase
cycle:

==========  =========================  ==================
Status      Condition                  Meaning
==========  =========================  ==================
N           frequency == 1             new, no cycle yet
E0          ratio <= 1                 active
S1          1 < ratio <= 2             recently sleeping
S2          2 < ratio <= 3             sleeping
S3          ratio > 3                  deeply sleeping
==========  =========================  ==================

where ``ratio = recency / expected_cycle``.
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Optional


class NESStatus(str, Enum):
    """Mutually exclusive lifecycle states."""

    NEW = "N"
    ESTABLISHED = "E0"
    SLEEPING_1 = "S1"
    SLEEPING_2 = "S2"
    SLEEPING_3 = "S3"


# Ordered from least to most dormant
NES_ORDER: tuple[NESStatus, ...] = (
    NESStatus.NEW,
    NESStatus.ESTABLISHED,
    NESStatus.SLEEPING_1,
    NESStatus.SLEEPING_2,
    NESStatus.SLEEPING_3,
)

ACTIVE_STATUSES = frozenset({NESStatus.NEW, NESStatus.ESTABLISHED})
SLEEPING_STATUSES = frozenset(
    {NESStatus.SLEEPING_1, NESStatus.SLEEPING_2, NESStatus.SLEEPING_3}
)

# Upper (inclusive) ratio bound for E0, S1 and S2
_NES_BREAKPOINTS = (
    (1.0, NESStatus.ESTABLISHED),
    (2.0, NESStatus.SLEEPING_1),
    (3.0, NESStatus.SLEEPING_2),
)


def nes_ratio(recency_days: float, expected_cycle_days: Optional[float]) -> Optional[float]:
    """Recency expressed in expected purchase cycles.

    Returns None when the cycle is undefined, zero or non-finite.
    """
    if expected_cycle_days is None or not math.isfinite(expected_cycle_days):
        return None
    if expected_cycle_days <= 0:
        return None
    return recency_days / expected_cycle_days


def classify_nes(
    frequency: int,
    recency_days: float,
    expected_cycle_days: Optional[float],
) -> NESStatus:
    """Assign a customer to exactly one NES status.

    Parameters
    ----------
    frequency:
        Number of purchases (>= 1)
    recency_days:
        Days since the last purchase (>= 0)
    expected_cycle_days:
        Customer's expected purchase cycle. A zero, undefined or non-finite
        cycle classifies a repeat customer as S3.

    Examples
    --------
    >>> classify_nes(1, 30.0, None)
    <NESStatus.NEW: 'N'>
    >>> classify_nes(3, 5.0, 10.0)
    <NESStatus.ESTABLISHED: 'E0'>
    >>> classify_nes(3, 35.0, 10.0)
    <NESStatus.SLEEPING_3: 'S3'>
    """
    if frequency < 1:
        raise ValueError(f"frequency must be positive: {frequency}")
    if recency_days < 0:
        raise ValueError(f"recency_days cannot be negative: {recency_days}")

    if frequency == 1:
        return NESStatus.NEW

    ratio = nes_ratio(recency_days, expected_cycle_days)
    if ratio is None:
        return NESStatus.SLEEPING_3

    for upper_bound, status in _NES_BREAKPOINTS:
        if ratio <= upper_bound:
            return status
    return NESStatus.SLEEPING_3
