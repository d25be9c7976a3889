"""Run configuration for the Customer DNA engine.

Configuration is an explicit, immutable value passed to every entry point;
the engine keeps no module-level state.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Literal, Optional, Sequence

from customer_dna.foundation.transactions import ALL_SCOPES
from customer_dna.models.churn import ChurnConfig
from customer_dna.models.value import CLVConfig


@dataclass(frozen=True)
class DNAConfig:
    """Configuration for one DNA analysis run.

    Attributes
    ----------
    reference_time:
        "Now" for recency calculations. If None, the latest transaction in the
        input is used (shared by all scopes of a batch).
    scope_keys:
        Scopes to analyse; ``"all"`` aggregates every scope
    use_population_fallback:
        Replace undefined individual IPT statistics with population values
    population_method:
        "median" or "mean" of individual IPT means for the population cycle
    fallback_cycle_days:
        Population cycle to use when a scope has no repeat customers
    churn:
        Churn estimation and back-test parameters
    clv:
        Heuristic CLV constants
    segment_basis:
        Profile metric binned into value segments ("CLV" or "total_spent")
    platform_id:
        Identifier attached to persisted rows
    max_workers:
        Worker processes for scope-level parallelism (1 = serial)
    scope_timeout_seconds:
        Wall-clock budget per scope when running in parallel
    persistence_attempts:
        Write attempts per scope before a PersistenceError is reported
    persistence_wait_seconds:
        Base of the exponential backoff between write attempts
    """

    reference_time: Optional[datetime] = None
    scope_keys: tuple[str, ...] = (ALL_SCOPES,)
    use_population_fallback: bool = True
    population_method: Literal["median", "mean"] = "median"
    fallback_cycle_days: Optional[float] = None
    churn: ChurnConfig = field(default_factory=ChurnConfig)
    clv: CLVConfig = field(default_factory=CLVConfig)
    segment_basis: Literal["CLV", "total_spent"] = "CLV"
    platform_id: Optional[str] = None
    max_workers: int = 1
    scope_timeout_seconds: Optional[float] = None
    persistence_attempts: int = 3
    persistence_wait_seconds: float = 1.0

    def __post_init__(self) -> None:
        if isinstance(self.scope_keys, str):
            object.__setattr__(self, "scope_keys", (self.scope_keys,))
        else:
            object.__setattr__(
                self, "scope_keys", tuple(dict.fromkeys(self.scope_keys))
            )
        if self.population_method not in ("median", "mean"):
            raise ValueError(
                f"population_method must be 'median' or 'mean', got {self.population_method!r}"
            )
        if self.fallback_cycle_days is not None and not (
            math.isfinite(self.fallback_cycle_days) and self.fallback_cycle_days > 0
        ):
            raise ValueError(
                f"fallback_cycle_days must be positive, got {self.fallback_cycle_days}"
            )
        if self.segment_basis not in ("CLV", "total_spent"):
            raise ValueError(
                f"segment_basis must be 'CLV' or 'total_spent', got {self.segment_basis!r}"
            )
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {self.max_workers}")
        if self.scope_timeout_seconds is not None and self.scope_timeout_seconds <= 0:
            raise ValueError(
                f"scope_timeout_seconds must be positive, got {self.scope_timeout_seconds}"
            )
        if self.persistence_attempts < 1:
            raise ValueError(
                f"persistence_attempts must be at least 1, got {self.persistence_attempts}"
            )
        if self.persistence_wait_seconds < 0:
            raise ValueError(
                f"persistence_wait_seconds cannot be negative, got {self.persistence_wait_seconds}"
            )

    def with_reference_time(self, reference_time: datetime) -> "DNAConfig":
        return replace(self, reference_time=reference_time)

    def with_scope_keys(self, scope_keys: Sequence[str]) -> "DNAConfig":
        return replace(self, scope_keys=tuple(scope_keys))
