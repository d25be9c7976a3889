"""Tests for multi-scope batch orchestration."""

import time
from datetime import datetime, timedelta, timezone

import pytest

from customer_dna.config import DNAConfig
from customer_dna.exceptions import MissingDataError
from customer_dna.foundation.transactions import Transaction
from customer_dna.orchestration.batch import (
    AnalysisRun,
    ScopeOutcome,
    run_dna_batch,
)
from customer_dna.orchestration.persistence import InMemoryProfileSink

BASE = datetime(2024, 1, 1)


def _txn(customer_id, day, scope, amount=10.0):
    return Transaction(customer_id, BASE + timedelta(days=day), amount, scope)


@pytest.fixture
def transactions():
    return (
        [_txn("C1", d, "A") for d in (0, 10, 20, 30)]
        + [_txn("C2", d, "A") for d in (0, 15, 45)]
        + [_txn("C3", 5, "A")]
        + [_txn("C1", d, "C") for d in (3, 40)]
        + [_txn("C4", d, "C") for d in (0, 20, 40, 60)]
    )


# Longer than any scope timeout used below; the pool is terminated first
STALL_SECONDS = 120.0


def _stalled_transaction(*fields):
    time.sleep(STALL_SECONDS)
    return Transaction(*fields)


class StalledTransaction(Transaction):
    """Blocks the worker process that unpickles it."""

    __slots__ = ()

    def __reduce__(self):
        return (
            _stalled_transaction,
            (self.customer_id, self.timestamp, self.amount, self.scope_key),
        )


def _stalled(customer_id, day, scope):
    return StalledTransaction(customer_id, BASE + timedelta(days=day), 10.0, scope)


class FlakySink(InMemoryProfileSink):
    """Fails with a transient error a fixed number of times."""

    def __init__(self, failures, error=OSError("disk busy")):
        super().__init__()
        self.failures = failures
        self.error = error
        self.calls = 0

    def write(self, scope_key, rows):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        super().write(scope_key, rows)


class TestScopeOutcome:
    def test_failed_outcome_requires_error(self):
        with pytest.raises(ValueError, match="must carry an error type"):
            ScopeOutcome(scope_key="A", succeeded=False)

    def test_succeeded_outcome_rejects_error(self):
        with pytest.raises(ValueError, match="cannot carry an error"):
            ScopeOutcome(scope_key="A", succeeded=True, error_type="ScopeError")


class TestAnalysisRun:
    def test_summary(self):
        run = AnalysisRun(
            run_id="r1",
            reference_time=BASE,
            scope_keys_requested=("A", "B", "all"),
            scope_keys_succeeded=("A", "all"),
            churn_accuracy=0.75,
            total_customers=12,
        )
        assert run.summary() == {
            "scopes_attempted": 3,
            "scopes_succeeded": 2,
            "total_customers": 12,
            "churn_accuracy": 0.75,
        }


class TestRunDNABatch:
    """Test per-scope isolation and run-level aggregation."""

    def test_empty_scope_fails_without_aborting_run(self, transactions):
        """Scopes A, B, all where B has no rows."""
        batch = run_dna_batch(transactions, DNAConfig(scope_keys=("A", "B", "all")))
        assert batch.run.scope_keys_succeeded == ("A", "all")
        assert batch.scopes_failed == ("B",)
        failed = batch.outcome("B")
        assert failed.error_type == "ScopeError"
        assert "No transactions" in failed.error_message
        summary = batch.run.summary()
        assert summary["scopes_attempted"] == 3
        assert summary["scopes_succeeded"] == 2

    def test_outcomes_in_requested_order(self, transactions):
        batch = run_dna_batch(transactions, DNAConfig(scope_keys=("all", "C", "A")))
        assert [o.scope_key for o in batch.outcomes] == ["all", "C", "A"]
        assert [p.scope_key for p in batch.profiles][:4] == ["all"] * 4

    def test_profiles_tagged_per_scope(self, transactions):
        batch = run_dna_batch(transactions, DNAConfig(scope_keys=("A", "C")))
        by_scope = {}
        for profile in batch.profiles:
            by_scope.setdefault(profile.scope_key, set()).add(profile.customer_id)
        assert by_scope == {"A": {"C1", "C2", "C3"}, "C": {"C1", "C4"}}
        c1_in_a = batch.results["A"].profiles[0]
        assert c1_in_a.frequency == 4

    def test_reference_time_shared_across_scopes(self, transactions):
        """The latest transaction of the whole input is "now" for every scope."""
        batch = run_dna_batch(transactions, DNAConfig(scope_keys=("A", "C")))
        assert batch.run.reference_time == BASE + timedelta(days=60)
        c1_in_a = batch.results["A"].profiles[0]
        assert c1_in_a.recency == 30.0

    def test_configured_reference_time(self, transactions):
        config = DNAConfig(scope_keys=("A",), reference_time=BASE + timedelta(days=100))
        batch = run_dna_batch(transactions, config)
        assert batch.run.reference_time == BASE + timedelta(days=100)

    def test_run_accuracy_uses_all_scope(self, transactions):
        batch = run_dna_batch(transactions, DNAConfig(scope_keys=("A", "C", "all")))
        assert batch.run.churn_accuracy == batch.results["all"].churn_accuracy

    def test_run_accuracy_pooled_without_all_scope(self, transactions):
        batch = run_dna_batch(transactions, DNAConfig(scope_keys=("A", "C")))
        a = batch.results["A"].churn_backtest
        c = batch.results["C"].churn_backtest
        expected = (a.correct + c.correct) / (a.evaluated + c.evaluated)
        assert batch.run.churn_accuracy == pytest.approx(expected)

    def test_total_customers_counts_distinct_ids(self, transactions):
        batch = run_dna_batch(transactions, DNAConfig(scope_keys=("A", "C", "all")))
        assert batch.run.total_customers == 4

    def test_all_scopes_failing_still_summarises(self, transactions):
        batch = run_dna_batch(transactions, DNAConfig(scope_keys=("X", "Y")))
        assert batch.run.scope_keys_succeeded == ()
        assert batch.run.churn_accuracy is None
        assert batch.run.total_customers == 0
        assert batch.profiles == ()

    def test_no_scope_keys_is_fatal(self, transactions):
        with pytest.raises(MissingDataError) as excinfo:
            run_dna_batch(transactions, DNAConfig(scope_keys=()))
        assert excinfo.value.field == "scope_keys"

    def test_empty_input_without_reference_time_is_fatal(self):
        with pytest.raises(MissingDataError):
            run_dna_batch([], DNAConfig())

    def test_run_id(self, transactions):
        batch = run_dna_batch(transactions, DNAConfig(scope_keys=("A",)), run_id="run-42")
        assert batch.run.run_id == "run-42"
        generated = run_dna_batch(transactions, DNAConfig(scope_keys=("A",)))
        assert len(generated.run.run_id) == 32

    def test_idempotent(self, transactions):
        config = DNAConfig(scope_keys=("A", "C", "all"))
        first = run_dna_batch(transactions, config, run_id="r")
        second = run_dna_batch(transactions, config, run_id="r")
        assert first.results == second.results
        assert first.run == second.run

    def test_parallel_matches_serial(self, transactions):
        serial = run_dna_batch(
            transactions, DNAConfig(scope_keys=("A", "B", "C", "all")), run_id="r"
        )
        parallel = run_dna_batch(
            transactions,
            DNAConfig(scope_keys=("A", "B", "C", "all"), max_workers=2),
            run_id="r",
        )
        assert parallel.results == serial.results
        assert parallel.run == serial.run
        assert [o.scope_key for o in parallel.outcomes] == ["A", "B", "C", "all"]
        assert parallel.scopes_failed == ("B",)

    def test_mixed_timezones_rejected_up_front(self, transactions):
        config = DNAConfig(
            scope_keys=("A",),
            reference_time=datetime(2024, 3, 1, tzinfo=timezone.utc),
        )
        with pytest.raises(ValueError, match="timezone-aware and naive"):
            run_dna_batch(transactions, config)

    def test_mixed_timezones_in_transactions_rejected(self, transactions):
        aware = Transaction("C9", datetime(2024, 1, 5, tzinfo=timezone.utc), 10.0, "A")
        with pytest.raises(ValueError, match="timezone-aware and naive"):
            run_dna_batch(transactions + [aware], DNAConfig(scope_keys=("A",)))

    def test_timezone_aware_input(self):
        utc = [
            Transaction(t.customer_id, t.timestamp.replace(tzinfo=timezone.utc), 10.0, "A")
            for t in [_txn("C1", d, "A") for d in (0, 10, 20)]
        ]
        config = DNAConfig(
            scope_keys=("A",),
            reference_time=datetime(2024, 1, 31, tzinfo=timezone.utc),
        )
        batch = run_dna_batch(utc, config)
        assert batch.run.scope_keys_succeeded == ("A",)
        assert batch.results["A"].profiles[0].recency == 10.0


class TestParallelTimeouts:
    """Test per-scope time budgets in the process pool."""

    def test_slow_scope_times_out_while_siblings_succeed(self, transactions):
        stalled = [_stalled("S1", d, "S") for d in (0, 10)]
        config = DNAConfig(
            scope_keys=("S", "A", "C"), max_workers=2, scope_timeout_seconds=10.0
        )
        batch = run_dna_batch(transactions + stalled, config)

        timed_out = batch.outcome("S")
        assert timed_out.error_type == "TimeoutError"
        assert "exceeded 10.0s" in timed_out.error_message
        assert batch.run.scope_keys_succeeded == ("A", "C")
        assert batch.outcome("A").customers_processed == 3

    def test_scopes_queued_behind_stalled_workers_still_run(self, transactions):
        """Both workers stall; the waiting scopes run in a fresh pool."""
        stalled = [_stalled("S1", d, "S") for d in (0, 10)] + [
            _stalled("T1", d, "T") for d in (0, 10)
        ]
        config = DNAConfig(
            scope_keys=("S", "T", "A", "C"), max_workers=2, scope_timeout_seconds=10.0
        )
        started = time.monotonic()
        batch = run_dna_batch(transactions + stalled, config)

        assert batch.scopes_failed == ("S", "T")
        assert {batch.outcome(k).error_type for k in ("S", "T")} == {"TimeoutError"}
        assert batch.run.scope_keys_succeeded == ("A", "C")
        assert [o.scope_key for o in batch.outcomes] == ["S", "T", "A", "C"]
        assert time.monotonic() - started < STALL_SECONDS

    def test_no_timeout_when_scopes_finish(self, transactions):
        config = DNAConfig(
            scope_keys=("A", "C", "all"), max_workers=2, scope_timeout_seconds=60.0
        )
        batch = run_dna_batch(transactions, config)
        assert batch.run.scope_keys_succeeded == ("A", "C", "all")


class TestBatchPersistence:
    """Test the serialised write path."""

    def test_writes_succeeded_scopes_in_order(self, transactions):
        sink = InMemoryProfileSink()
        config = DNAConfig(scope_keys=("all", "B", "A"), platform_id="amz")
        batch = run_dna_batch(transactions, config, sink=sink, run_id="r1")
        assert [scope for scope, _ in sink.writes] == ["all", "A"]
        rows = sink.read()
        assert set(rows["run_id"]) == {"r1"}
        assert set(rows["platform_id"]) == {"amz"}
        assert len(rows) == len(batch.profiles)
        assert batch.persistence_errors == {}

    def test_transient_failures_are_retried(self, transactions):
        sink = FlakySink(failures=2)
        config = DNAConfig(scope_keys=("A",), persistence_attempts=3, persistence_wait_seconds=0)
        batch = run_dna_batch(transactions, config, sink=sink)
        assert sink.calls == 3
        assert len(sink.writes) == 1
        assert batch.persistence_errors == {}

    def test_exhausted_retries_reported_separately(self, transactions):
        sink = FlakySink(failures=10)
        config = DNAConfig(
            scope_keys=("A", "C"), persistence_attempts=2, persistence_wait_seconds=0
        )
        batch = run_dna_batch(transactions, config, sink=sink)
        assert set(batch.persistence_errors) == {"A", "C"}
        assert "after 2 attempts" in batch.persistence_errors["A"]
        assert batch.run.scope_keys_succeeded == ("A", "C")
        assert all(o.succeeded for o in batch.outcomes)

    def test_non_transient_failure_is_not_retried(self, transactions):
        sink = FlakySink(failures=1, error=ValueError("schema mismatch"))
        config = DNAConfig(scope_keys=("A", "C"), persistence_wait_seconds=0)
        batch = run_dna_batch(transactions, config, sink=sink)
        assert list(batch.persistence_errors) == ["A"]
        assert "schema mismatch" in batch.persistence_errors["A"]
        assert [scope for scope, _ in sink.writes] == ["C"]
