"""Synthetic data generation utilities.

This package produces realistic-but-fake scoped purchase histories to
exercise the DNA pipeline without accessing production data.
"""

from .generator import (
    Customer,
    ScenarioConfig,
    generate_customers,
    generate_transactions,
)
from .scenarios import (
    BASELINE_SCENARIO,
    HIGH_CHURN_SCENARIO,
    LOYAL_BASE_SCENARIO,
)

__all__ = [
    "Customer",
    "ScenarioConfig",
    "generate_customers",
    "generate_transactions",
    "BASELINE_SCENARIO",
    "HIGH_CHURN_SCENARIO",
    "LOYAL_BASE_SCENARIO",
]
