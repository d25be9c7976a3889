"""Tests for transaction records and scope selection."""

from datetime import datetime, timezone

import pytest

from customer_dna.exceptions import MissingDataError
from customer_dna.foundation.transactions import (
    ALL_SCOPES,
    Transaction,
    available_scopes,
    check_timezones,
    latest_timestamp,
    select_scope,
    transactions_from_records,
)


class TestTransaction:
    """Test Transaction dataclass validation."""

    def test_valid_transaction(self):
        """Valid transaction should be created successfully."""
        txn = Transaction("C1", datetime(2024, 1, 1), 25.0, "A")
        assert txn.customer_id == "C1"
        assert txn.amount == 25.0
        assert txn.scope_key == "A"

    def test_non_datetime_timestamp_raises_error(self):
        """Timestamps must be datetime objects."""
        with pytest.raises(TypeError, match="timestamp must be a datetime"):
            Transaction("C1", "2024-01-01", 25.0, "A")

    def test_non_finite_amount_raises_error(self):
        """NaN amounts are rejected."""
        with pytest.raises(ValueError, match="amount must be finite"):
            Transaction("C1", datetime(2024, 1, 1), float("nan"), "A")

    def test_transaction_is_immutable(self):
        """Transactions are frozen."""
        txn = Transaction("C1", datetime(2024, 1, 1), 25.0, "A")
        with pytest.raises(AttributeError):
            txn.amount = 30.0


class TestTransactionsFromRecords:
    """Test conversion from mapping records."""

    def test_parses_iso_strings(self):
        """ISO timestamp strings (including Z suffix) are parsed."""
        txns = transactions_from_records(
            [
                {
                    "customer_id": 7,
                    "timestamp": "2024-03-01T10:00:00Z",
                    "amount": "12.5",
                    "scope_key": "A",
                }
            ]
        )
        assert txns[0].customer_id == "7"
        assert txns[0].timestamp == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)
        assert txns[0].amount == 12.5

    def test_accepts_date_alias(self):
        """The ``date`` key is accepted in place of ``timestamp``."""
        txns = transactions_from_records(
            [{"customer_id": "C1", "date": datetime(2024, 1, 1), "amount": 1.0}],
            default_scope="A",
        )
        assert txns[0].timestamp == datetime(2024, 1, 1)
        assert txns[0].scope_key == "A"

    def test_missing_amount_names_field(self):
        """MissingDataError names the missing field."""
        with pytest.raises(MissingDataError) as excinfo:
            transactions_from_records(
                [{"customer_id": "C1", "date": datetime(2024, 1, 1), "scope_key": "A"}]
            )
        assert excinfo.value.field == "amount"
        assert excinfo.value.details == {"field": "amount"}

    def test_missing_scope_without_default(self):
        """Scope is required unless a default is given."""
        with pytest.raises(MissingDataError) as excinfo:
            transactions_from_records(
                [{"customer_id": "C1", "date": datetime(2024, 1, 1), "amount": 1.0}]
            )
        assert excinfo.value.field == "scope_key"


class TestScopes:
    """Test scope listing and selection."""

    @pytest.fixture
    def transactions(self):
        return [
            Transaction("C1", datetime(2024, 1, 1), 10.0, "B"),
            Transaction("C1", datetime(2024, 1, 5), 10.0, "A"),
            Transaction("C2", datetime(2024, 2, 1), 10.0, "A"),
        ]

    def test_available_scopes_sorted(self, transactions):
        assert available_scopes(transactions) == ["A", "B"]

    def test_select_single_scope(self, transactions):
        selected = select_scope(transactions, "A")
        assert len(selected) == 2
        assert all(txn.scope_key == "A" for txn in selected)

    def test_select_all_scope_keeps_everything(self, transactions):
        assert select_scope(transactions, ALL_SCOPES) == transactions

    def test_select_unknown_scope_is_empty(self, transactions):
        assert select_scope(transactions, "Z") == []

    def test_latest_timestamp(self, transactions):
        assert latest_timestamp(transactions) == datetime(2024, 2, 1)

    def test_latest_timestamp_empty_raises(self):
        with pytest.raises(MissingDataError, match="reference time"):
            latest_timestamp([])


class TestCheckTimezones:
    def test_all_naive(self):
        txns = [Transaction("C1", datetime(2024, 1, 1), 10.0, "A")]
        check_timezones(txns, datetime(2024, 2, 1))

    def test_all_aware(self):
        txns = [Transaction("C1", datetime(2024, 1, 1, tzinfo=timezone.utc), 10.0, "A")]
        check_timezones(txns, datetime(2024, 2, 1, tzinfo=timezone.utc))
        check_timezones(txns)

    def test_aware_reference_with_naive_data(self):
        txns = [Transaction("C1", datetime(2024, 1, 1), 10.0, "A")]
        with pytest.raises(ValueError, match="customer_id=C1"):
            check_timezones(txns, datetime(2024, 2, 1, tzinfo=timezone.utc))

    def test_mixed_transactions(self):
        txns = [
            Transaction("C1", datetime(2024, 1, 1), 10.0, "A"),
            Transaction("C2", datetime(2024, 1, 2, tzinfo=timezone.utc), 10.0, "A"),
        ]
        with pytest.raises(ValueError, match="timezone-aware and naive"):
            check_timezones(txns)
