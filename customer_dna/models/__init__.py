"""Statistical models behind the customer DNA profile."""

from customer_dna.models.churn import (
    ChurnBacktest,
    ChurnConfig,
    ChurnEstimator,
    survival_probability,
)
from customer_dna.models.lifecycle import NESStatus, classify_nes, nes_ratio
from customer_dna.models.population import (
    PopulationStatistics,
    estimate_population_statistics,
)
from customer_dna.models.value import (
    CLVConfig,
    ValueSegmentThresholds,
    assign_loyalty_tier,
    calculate_clv,
    value_segment_thresholds,
)

__all__ = [
    "ChurnBacktest",
    "ChurnConfig",
    "ChurnEstimator",
    "CLVConfig",
    "NESStatus",
    "PopulationStatistics",
    "ValueSegmentThresholds",
    "assign_loyalty_tier",
    "calculate_clv",
    "classify_nes",
    "estimate_population_statistics",
    "nes_ratio",
    "survival_probability",
    "value_segment_thresholds",
]
