"""Customer value metrics: heuristic CLV, value segments and loyalty tiers.

CLV here is a heuristic projection, not a probabilistic model:

    CLV = total_spent × frequency_multiplier × recency_decay

    frequency_multiplier = 1 + frequency_weight × frequency    ("linear")
                         = 1 + frequency_weight if frequency > 1 ("repeat")
    recency_decay        = max(0, 1 − recency_penalty × min(recency / lookback_days, 1))

Value segments are quartiles of the current population, recomputed on every
run. Loyalty tiers are a fixed rule table over (frequency, NES status).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional, Sequence

import numpy as np

from customer_dna.models.lifecycle import NESStatus

HIGH_VALUE = "High Value"
MEDIUM_HIGH_VALUE = "Medium-High Value"
MEDIUM_VALUE = "Medium Value"
STANDARD_VALUE = "Standard Value"

VALUE_SEGMENTS = (HIGH_VALUE, MEDIUM_HIGH_VALUE, MEDIUM_VALUE, STANDARD_VALUE)

LOYALTY_TIERS = ("Platinum", "Gold", "Silver", "Bronze")

_PLATINUM_STATUSES = frozenset({NESStatus.NEW, NESStatus.ESTABLISHED})
_GOLD_STATUSES = frozenset(
    {NESStatus.NEW, NESStatus.ESTABLISHED, NESStatus.SLEEPING_1}
)


@dataclass(frozen=True)
class CLVConfig:
    """Constants of the heuristic CLV projection.

    Attributes
    ----------
    frequency_mode:
        "linear" scales by every purchase; "repeat" applies a flat uplift to
        customers with more than one purchase
    frequency_weight:
        Weight of the frequency-loyalty multiplier
    lookback_days:
        Horizon over which recency decays to its full penalty
    recency_penalty:
        Fraction of value lost once recency reaches ``lookback_days``
    """

    frequency_mode: Literal["linear", "repeat"] = "linear"
    frequency_weight: float = 0.1
    lookback_days: float = 365.0
    recency_penalty: float = 0.5

    def __post_init__(self) -> None:
        if self.frequency_mode not in ("linear", "repeat"):
            raise ValueError(
                f"frequency_mode must be 'linear' or 'repeat', got {self.frequency_mode!r}"
            )
        if self.frequency_weight < 0:
            raise ValueError(
                f"frequency_weight cannot be negative, got {self.frequency_weight}"
            )
        if self.lookback_days <= 0:
            raise ValueError(f"lookback_days must be positive, got {self.lookback_days}")
        if not 0 <= self.recency_penalty <= 1:
            raise ValueError(
                f"recency_penalty must be between 0 and 1, got {self.recency_penalty}"
            )

    @classmethod
    def basic(cls) -> "CLVConfig":
        """Linear frequency multiplier over a one-year lookback."""
        return cls(
            frequency_mode="linear",
            frequency_weight=0.1,
            lookback_days=365.0,
            recency_penalty=0.5,
        )

    @classmethod
    def repeat_buyer(cls) -> "CLVConfig":
        """Flat 20% repeat-buyer uplift over a two-year lookback."""
        return cls(
            frequency_mode="repeat",
            frequency_weight=0.2,
            lookback_days=730.0,
            recency_penalty=0.5,
        )


def frequency_multiplier(frequency: int, config: CLVConfig) -> float:
    if config.frequency_mode == "repeat":
        return 1.0 + (config.frequency_weight if frequency > 1 else 0.0)
    return 1.0 + config.frequency_weight * frequency


def recency_decay(recency_days: float, config: CLVConfig) -> float:
    elapsed = min(recency_days / config.lookback_days, 1.0)
    return max(0.0, 1.0 - config.recency_penalty * elapsed)


def calculate_clv(
    total_spent: float,
    frequency: int,
    recency_days: float,
    config: Optional[CLVConfig] = None,
) -> float:
    """Heuristic customer lifetime value.

    Examples
    --------
    >>> calculate_clv(100.0, 2, 0.0)
    120.0
    >>> calculate_clv(100.0, 2, 365.0)
    60.0
    """
    config = config or CLVConfig()
    if frequency < 1:
        raise ValueError(f"frequency must be positive: {frequency}")
    if recency_days < 0:
        raise ValueError(f"recency_days cannot be negative: {recency_days}")
    return (
        max(total_spent, 0.0)
        * frequency_multiplier(frequency, config)
        * recency_decay(recency_days, config)
    )


@dataclass(frozen=True)
class ValueSegmentThresholds:
    """Quartile cut-offs of one run's population.

    Attributes
    ----------
    basis:
        Profile metric the quartiles were computed on ("CLV" or "total_spent")
    q25, q50, q75:
        25th, 50th and 75th percentiles
    population_size:
        Number of customers the thresholds were computed from
    """

    basis: str
    q25: float
    q50: float
    q75: float
    population_size: int

    def __post_init__(self) -> None:
        if not (self.q25 <= self.q50 <= self.q75):
            raise ValueError(
                f"Quartiles must be ordered: {self.q25}, {self.q50}, {self.q75}"
            )

    def segment(self, value: float) -> str:
        """Map a value to its segment label."""
        if value > self.q75:
            return HIGH_VALUE
        if value > self.q50:
            return MEDIUM_HIGH_VALUE
        if value > self.q25:
            return MEDIUM_VALUE
        return STANDARD_VALUE


def value_segment_thresholds(
    values: Sequence[float], basis: str = "CLV"
) -> ValueSegmentThresholds:
    """Compute quartile thresholds from the current population's values."""
    if len(values) == 0:
        raise ValueError("Cannot compute value segments for an empty population")
    arr = np.asarray(values, dtype=float)
    if not np.all(np.isfinite(arr)):
        raise ValueError(f"{basis} values must be finite to compute value segments")
    q25, q50, q75 = (float(q) for q in np.quantile(arr, [0.25, 0.5, 0.75]))
    return ValueSegmentThresholds(
        basis=basis, q25=q25, q50=q50, q75=q75, population_size=len(arr)
    )


def assign_loyalty_tier(frequency: int, nes_status: NESStatus) -> str:
    """Rule table over (frequency, NES status).

    >>> assign_loyalty_tier(5, NESStatus.ESTABLISHED)
    'Platinum'
    >>> assign_loyalty_tier(5, NESStatus.SLEEPING_3)
    'Silver'
    """
    status = NESStatus(nes_status)
    if frequency >= 5 and status in _PLATINUM_STATUSES:
        return "Platinum"
    if frequency >= 3 and status in _GOLD_STATUSES:
        return "Gold"
    if frequency >= 2:
        return "Silver"
    return "Bronze"
