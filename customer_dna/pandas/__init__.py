"""Pandas DataFrame adapters for Customer DNA components."""

from .dna import (
    analyze_customer_dna_df,
    dataframe_to_transactions,
    profiles_to_dataframe,
    scope_outcomes_to_dataframe,
)

__all__ = [
    "analyze_customer_dna_df",
    "dataframe_to_transactions",
    "profiles_to_dataframe",
    "scope_outcomes_to_dataframe",
]
