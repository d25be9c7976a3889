"""Customer DNA analyses.

1. DNA profiling - per-customer lifecycle, churn and value profile for a scope
2. Distribution summary - NES, loyalty-tier and value-segment breakdowns
"""

from .dna import (
    PROFILE_COLUMNS,
    CustomerDNAProfile,
    CustomerFailure,
    DNAAnalysisResult,
    analyze_customer_dna,
)
from .summary import (
    DNASummary,
    NESGroupSummary,
    format_summary_markdown,
    summarize_dna,
    summarize_nes_distribution,
)

__all__ = [
    # DNA profiling
    "PROFILE_COLUMNS",
    "CustomerDNAProfile",
    "CustomerFailure",
    "DNAAnalysisResult",
    "analyze_customer_dna",
    # Summary
    "DNASummary",
    "NESGroupSummary",
    "format_summary_markdown",
    "summarize_dna",
    "summarize_nes_distribution",
]
