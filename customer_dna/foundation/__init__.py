"""Foundational building blocks for the Customer DNA engine.

This package exposes the transaction record consumed by the engine and the
per-customer timeline builder that derives inter-purchase times.
"""

from .timeline import CustomerTimeline, build_timelines, days_between
from .transactions import (
    ALL_SCOPES,
    Transaction,
    available_scopes,
    check_timezones,
    latest_timestamp,
    select_scope,
    transactions_from_records,
)

__all__ = [
    "ALL_SCOPES",
    "CustomerTimeline",
    "Transaction",
    "available_scopes",
    "build_timelines",
    "check_timezones",
    "days_between",
    "latest_timestamp",
    "select_scope",
    "transactions_from_records",
]
