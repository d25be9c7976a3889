"""Distribution summaries of customer DNA profiles.

Answers the reporting questions asked after every DNA run:
- How are customers spread across NES lifecycle states?
- What are the average CLV, spend and frequency of each state?
- How many customers fall in each loyalty tier and value segment?
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Sequence

from customer_dna.analyses.dna import CustomerDNAProfile
from customer_dna.models.lifecycle import NES_ORDER, NESStatus
from customer_dna.models.value import LOYALTY_TIERS, VALUE_SEGMENTS

PERCENTAGE_PRECISION = Decimal("0.01")


@dataclass(frozen=True)
class NESGroupSummary:
    """Aggregate metrics for the customers in one NES status.

    Attributes
    ----------
    status:
        NES lifecycle status
    count:
        Customers in the status
    percentage:
        Share of all profiled customers (0-100)
    avg_clv, avg_monetary, avg_frequency:
        Group means
    avg_ipt:
        Mean of the defined IPT means in the group (None for all-N groups)
    """

    status: NESStatus
    count: int
    percentage: Decimal
    avg_clv: float
    avg_monetary: float
    avg_frequency: float
    avg_ipt: Optional[float]

    def __post_init__(self) -> None:
        if self.count < 1:
            raise ValueError(f"Group count must be positive: {self.count}")
        if not 0 <= self.percentage <= 100:
            raise ValueError(f"Percentage must be 0-100: {self.percentage}")


@dataclass(frozen=True)
class DNASummary:
    """NES, loyalty-tier and value-segment distributions.

    Tier and segment distributions list every label (zero counts included)
    in their canonical order.
    """

    total_customers: int
    nes_distribution: tuple[NESGroupSummary, ...]
    loyalty_distribution: dict[str, int]
    value_segment_distribution: dict[str, int]

    def nes_group(self, status: NESStatus) -> Optional[NESGroupSummary]:
        status = NESStatus(status)
        for group in self.nes_distribution:
            if group.status is status:
                return group
        return None


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values)


def summarize_nes_distribution(
    profiles: Sequence[CustomerDNAProfile],
) -> tuple[NESGroupSummary, ...]:
    """Group profiles by NES status, in lifecycle order; empty statuses are omitted."""
    if not profiles:
        return ()

    total = len(profiles)
    groups: list[NESGroupSummary] = []
    for status in NES_ORDER:
        members = [p for p in profiles if p.nes_status is status]
        if not members:
            continue
        ipts = [p.ipt_mean for p in members if p.ipt_mean is not None]
        groups.append(
            NESGroupSummary(
                status=status,
                count=len(members),
                percentage=(Decimal(len(members)) / Decimal(total) * 100).quantize(
                    PERCENTAGE_PRECISION, rounding=ROUND_HALF_UP
                ),
                avg_clv=_mean([p.clv for p in members]),
                avg_monetary=_mean([p.monetary for p in members]),
                avg_frequency=_mean([p.frequency for p in members]),
                avg_ipt=_mean(ipts) if ipts else None,
            )
        )
    return tuple(groups)


def summarize_dna(profiles: Sequence[CustomerDNAProfile]) -> DNASummary:
    """Build NES, loyalty-tier and value-segment distributions.

    Examples
    --------
    >>> from datetime import datetime
    >>> from customer_dna.analyses.dna import analyze_customer_dna
    >>> from customer_dna.foundation.transactions import Transaction
    >>> txns = [Transaction("C1", datetime(2024, 1, d), 10.0, "A") for d in (1, 11, 21)]
    >>> summary = summarize_dna(analyze_customer_dna(txns, datetime(2024, 1, 26)).profiles)
    >>> summary.total_customers
    1
    """
    loyalty = {tier: 0 for tier in LOYALTY_TIERS}
    segments = {segment: 0 for segment in VALUE_SEGMENTS}
    for profile in profiles:
        loyalty[profile.loyalty_tier] += 1
        segments[profile.value_segment] += 1

    return DNASummary(
        total_customers=len(profiles),
        nes_distribution=summarize_nes_distribution(profiles),
        loyalty_distribution=loyalty,
        value_segment_distribution=segments,
    )


def format_summary_markdown(summary: DNASummary, title: str = "Customer DNA Summary") -> str:
    """Render a summary as a Markdown report section."""
    lines = [f"## {title}\n", f"- **Customers Analyzed:** {summary.total_customers}\n"]

    lines.append("### NES Status Distribution\n")
    lines.append("| Status | Count | % | Avg CLV | Avg Monetary | Avg Frequency | Avg IPT |")
    lines.append("|---|---|---|---|---|---|---|")
    for group in summary.nes_distribution:
        avg_ipt = f"{group.avg_ipt:.1f}" if group.avg_ipt is not None else "-"
        lines.append(
            f"| {group.status.value} | {group.count} | {group.percentage} | "
            f"{group.avg_clv:.2f} | {group.avg_monetary:.2f} | "
            f"{group.avg_frequency:.2f} | {avg_ipt} |"
        )

    lines.append("\n### Loyalty Tier Distribution\n")
    for tier, count in summary.loyalty_distribution.items():
        lines.append(f"- **{tier}:** {count}")

    lines.append("\n### Value Segment Distribution\n")
    for segment, count in summary.value_segment_distribution.items():
        lines.append(f"- **{segment}:** {count}")
    lines.append("")

    return "\n".join(lines)
