"""Pandas DataFrame adapters for customer DNA analysis."""

from datetime import datetime
from typing import List, Optional, Sequence

import pandas as pd  # type: ignore

from customer_dna.analyses.dna import (
    EXTENDED_PROFILE_COLUMNS,
    PROFILE_COLUMNS,
    CustomerDNAProfile,
    analyze_customer_dna,
)
from customer_dna.config import DNAConfig
from customer_dna.exceptions import MissingDataError
from customer_dna.foundation.transactions import (
    ALL_SCOPES,
    Transaction,
    latest_timestamp,
)
from customer_dna.orchestration.batch import BatchResult

SCOPE_OUTCOME_COLUMNS = [
    "scope_key",
    "succeeded",
    "customers_processed",
    "customers_failed",
    "churn_accuracy",
    "error_type",
    "error_message",
    "duration_ms",
]


def dataframe_to_transactions(
    transactions_df: pd.DataFrame,
    customer_id_col: str = "customer_id",
    date_col: str = "date",
    amount_col: str = "amount",
    scope_col: str = "scope_key",
    default_scope: Optional[str] = None,
) -> List[Transaction]:
    """Convert a transaction table to Transaction records.

    Args:
        transactions_df: One row per purchase
        *_col: Column name mappings for flexibility
        default_scope: Scope for every row when the table has no scope column

    Returns:
        List of Transaction objects in row order

    Raises:
        MissingDataError: If a required column is absent or contains nulls;
            ``field`` names the offending column

    Example:
        >>> df = pd.read_csv('sales.csv')  # doctest: +SKIP
        >>> txns = dataframe_to_transactions(df, customer_id_col='buyer', date_col='time')  # doctest: +SKIP
    """
    required_cols = [customer_id_col, date_col, amount_col]
    use_scope_col = scope_col in transactions_df.columns or default_scope is None
    if use_scope_col:
        required_cols.append(scope_col)

    missing_cols = [col for col in required_cols if col not in transactions_df.columns]
    if missing_cols:
        raise MissingDataError(
            missing_cols[0], f"DataFrame missing required columns: {missing_cols}"
        )

    if transactions_df.empty:
        return []

    null_cols = transactions_df[required_cols].isnull().any()
    if null_cols.any():
        null_col_names = null_cols[null_cols].index.tolist()
        raise MissingDataError(
            null_col_names[0],
            f"Null/NaN values found in columns: {null_col_names}. "
            "DNA analysis requires complete transaction data.",
        )

    timestamps = [ts.to_pydatetime() for ts in pd.to_datetime(transactions_df[date_col])]
    customer_ids = transactions_df[customer_id_col].astype(str).tolist()
    amounts = transactions_df[amount_col].astype(float).tolist()
    if use_scope_col:
        scopes = transactions_df[scope_col].astype(str).tolist()
    else:
        scopes = [default_scope] * len(transactions_df)

    return [
        Transaction(
            customer_id=customer_id,
            timestamp=timestamp,
            amount=amount,
            scope_key=scope_key,
        )
        for customer_id, timestamp, amount, scope_key in zip(
            customer_ids, timestamps, amounts, scopes
        )
    ]


def profiles_to_dataframe(
    profiles: Sequence[CustomerDNAProfile], extended: bool = False
) -> pd.DataFrame:
    """Convert DNA profiles to a DataFrame with the stable output columns.

    Args:
        profiles: Profiles from one or more scopes
        extended: Also include first_purchase, last_purchase and NES_ratio

    Returns:
        DataFrame with one row per profile, in input order
    """
    columns = list(EXTENDED_PROFILE_COLUMNS if extended else PROFILE_COLUMNS)
    if not profiles:
        return pd.DataFrame(columns=columns)
    return pd.DataFrame.from_records(
        [p.as_dict(extended=extended) for p in profiles], columns=columns
    )


def scope_outcomes_to_dataframe(batch: BatchResult) -> pd.DataFrame:
    """Per-scope success/failure table of a batch run."""
    rows = [
        {
            "scope_key": o.scope_key,
            "succeeded": o.succeeded,
            "customers_processed": o.customers_processed,
            "customers_failed": o.customers_failed,
            "churn_accuracy": o.churn_accuracy,
            "error_type": o.error_type,
            "error_message": o.error_message,
            "duration_ms": o.duration_ms,
        }
        for o in batch.outcomes
    ]
    return pd.DataFrame.from_records(rows, columns=SCOPE_OUTCOME_COLUMNS)


def analyze_customer_dna_df(
    transactions_df: pd.DataFrame,
    reference_time: Optional[datetime] = None,
    config: Optional[DNAConfig] = None,
    scope_key: str = ALL_SCOPES,
    customer_id_col: str = "customer_id",
    date_col: str = "date",
    amount_col: str = "amount",
) -> pd.DataFrame:
    """Run a single-scope DNA analysis on a transaction table.

    The table is treated as one scope; filter it beforehand (or use
    :func:`customer_dna.orchestration.run_dna_batch`) for multi-scope runs.

    Args:
        transactions_df: One row per purchase
        reference_time: "Now" for recency; defaults to the latest purchase
        config: Run configuration
        scope_key: Scope label written onto every profile

    Returns:
        DataFrame of profiles with the stable output columns

    Example:
        >>> dna_df = analyze_customer_dna_df(sales_df, date_col='time')  # doctest: +SKIP
        >>> dna_df.groupby('NES_status').size()  # doctest: +SKIP
    """
    transactions = dataframe_to_transactions(
        transactions_df,
        customer_id_col=customer_id_col,
        date_col=date_col,
        amount_col=amount_col,
        scope_col="__scope__",
        default_scope=scope_key,
    )
    reference_time = reference_time or latest_timestamp(transactions)
    result = analyze_customer_dna(
        transactions, reference_time, config=config, scope_key=scope_key
    )
    return profiles_to_dataframe(result.profiles)
