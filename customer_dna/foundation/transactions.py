"""Transaction records consumed by the Customer DNA engine."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Mapping, Sequence

from customer_dna.exceptions import MissingDataError

ALL_SCOPES = "all"

REQUIRED_TRANSACTION_FIELDS = ("customer_id", "timestamp", "amount", "scope_key")


@dataclass(frozen=True, slots=True)
class Transaction:
    """A single purchase by a customer within a scope.

    Attributes
    ----------
    customer_id:
        Unique customer identifier
    timestamp:
        Purchase time. All timestamps in one run must share a timezone
        (or all be timezone-naive).
    amount:
        Purchase amount
    scope_key:
        Product-line / platform partition the purchase belongs to
    """

    customer_id: str
    timestamp: datetime
    amount: float
    scope_key: str

    def __post_init__(self) -> None:
        if not isinstance(self.timestamp, datetime):
            raise TypeError(
                f"timestamp must be a datetime, got {type(self.timestamp).__name__} "
                f"(customer_id={self.customer_id})"
            )
        if not math.isfinite(self.amount):
            raise ValueError(
                f"amount must be finite: {self.amount} (customer_id={self.customer_id})"
            )


def transactions_from_records(
    records: Iterable[Mapping[str, object]],
    default_scope: str | None = None,
) -> list[Transaction]:
    """Build transactions from mapping records.

    Records must provide ``customer_id``, ``timestamp`` (or ``date``) and
    ``amount``. ``scope_key`` may be omitted when ``default_scope`` is given.

    Raises
    ------
    MissingDataError:
        If a record is missing a required field
    """
    transactions: list[Transaction] = []
    for idx, record in enumerate(records):
        if "customer_id" not in record:
            raise MissingDataError(
                "customer_id", f"Transaction at index {idx} missing key customer_id"
            )
        ts = record.get("timestamp", record.get("date"))
        if ts is None:
            raise MissingDataError(
                "timestamp", f"Transaction at index {idx} missing key timestamp/date"
            )
        if "amount" not in record:
            raise MissingDataError(
                "amount", f"Transaction at index {idx} missing key amount"
            )
        scope_key = record.get("scope_key", default_scope)
        if scope_key is None:
            raise MissingDataError(
                "scope_key", f"Transaction at index {idx} missing key scope_key"
            )
        if isinstance(ts, str):
            ts = datetime.fromisoformat(ts.replace("Z", "+00:00"))
        transactions.append(
            Transaction(
                customer_id=str(record["customer_id"]),
                timestamp=ts,
                amount=float(record["amount"]),
                scope_key=str(scope_key),
            )
        )
    return transactions


def available_scopes(transactions: Sequence[Transaction]) -> list[str]:
    """Return the distinct scope keys present, sorted."""
    return sorted({txn.scope_key for txn in transactions})


def select_scope(
    transactions: Sequence[Transaction], scope_key: str
) -> list[Transaction]:
    """Subset transactions to one scope; ``"all"`` keeps every transaction."""
    if scope_key == ALL_SCOPES:
        return list(transactions)
    return [txn for txn in transactions if txn.scope_key == scope_key]


def latest_timestamp(transactions: Sequence[Transaction]) -> datetime:
    """Timestamp of the most recent transaction (default reference time)."""
    if not transactions:
        raise MissingDataError("timestamp", "Cannot infer reference time without transactions")
    return max(txn.timestamp for txn in transactions)


def check_timezones(
    transactions: Iterable[Transaction], reference_time: datetime | None = None
) -> None:
    """Ensure timestamps and the reference time are all aware or all naive.

    Raises
    ------
    ValueError:
        If timezone-aware and naive datetimes are mixed
    """
    aware: set[bool] = set()
    if reference_time is not None:
        aware.add(reference_time.utcoffset() is not None)
    for txn in transactions:
        aware.add(txn.timestamp.utcoffset() is not None)
        if len(aware) > 1:
            raise ValueError(
                "Cannot mix timezone-aware and naive datetimes "
                f"(customer_id={txn.customer_id}, timestamp={txn.timestamp.isoformat()}, "
                f"reference_time={reference_time.isoformat() if reference_time else None})"
            )
