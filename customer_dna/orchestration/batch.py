"""Batch orchestration of DNA analyses across scopes.

Runs the per-scope DNA analysis for every requested scope key and gathers
the outcomes into one :class:`BatchResult`:

1. Resolve the shared reference time (latest transaction unless configured)
2. Analyse each scope, serially or in a bounded process pool where each
   scope's timeout counts from when it starts running
3. Record success or failure per scope; a failed scope never aborts others
4. Persist succeeded scopes, serially and in requested order
5. Summarise the run (:class:`AnalysisRun`)

Design:
- Per-scope isolation: every exception raised while analysing a scope is
  turned into a failed :class:`ScopeOutcome`
- Persistence failures are reported in ``persistence_errors`` and never
  change a scope's analysis outcome
"""

from __future__ import annotations

import math
import multiprocessing
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Sequence

import structlog

from customer_dna.analyses.dna import (
    CustomerDNAProfile,
    DNAAnalysisResult,
    analyze_customer_dna,
)
from customer_dna.config import DNAConfig
from customer_dna.exceptions import MissingDataError, PersistenceError
from customer_dna.foundation.transactions import (
    ALL_SCOPES,
    Transaction,
    check_timezones,
    latest_timestamp,
    select_scope,
)
from customer_dna.models.churn import ChurnBacktest
from customer_dna.orchestration.persistence import (
    ProfileSink,
    profiles_frame_for_persistence,
    write_with_retry,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ScopeOutcome:
    """Success or failure of one scope in a batch run.

    Attributes
    ----------
    scope_key:
        Analysed scope
    succeeded:
        Whether profiles were produced
    customers_processed:
        Profiles produced
    customers_failed:
        Customers skipped because of per-customer errors
    churn_accuracy:
        Back-tested churn accuracy of the scope (None if not evaluable)
    error_type, error_message:
        Exception class name and message for failed scopes
    duration_ms:
        Wall-clock analysis time
    """

    scope_key: str
    succeeded: bool
    customers_processed: int = 0
    customers_failed: int = 0
    churn_accuracy: Optional[float] = None
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    duration_ms: float = 0.0

    def __post_init__(self) -> None:
        if self.succeeded and self.error_type is not None:
            raise ValueError(
                f"Succeeded scope cannot carry an error (scope_key={self.scope_key})"
            )
        if not self.succeeded and self.error_type is None:
            raise ValueError(
                f"Failed scope must carry an error type (scope_key={self.scope_key})"
            )


@dataclass(frozen=True)
class AnalysisRun:
    """Summary of one batch run."""

    run_id: str
    reference_time: datetime
    scope_keys_requested: tuple[str, ...]
    scope_keys_succeeded: tuple[str, ...]
    churn_accuracy: Optional[float]
    total_customers: int

    def summary(self) -> dict[str, Any]:
        return {
            "scopes_attempted": len(self.scope_keys_requested),
            "scopes_succeeded": len(self.scope_keys_succeeded),
            "total_customers": self.total_customers,
            "churn_accuracy": self.churn_accuracy,
        }


@dataclass(frozen=True)
class BatchResult:
    """Everything a batch run produced.

    Attributes
    ----------
    run:
        Run-level summary
    outcomes:
        One outcome per requested scope, in requested order
    results:
        Analysis results of succeeded scopes, keyed by scope
    persistence_errors:
        Scope key -> message for scopes whose rows could not be written
    """

    run: AnalysisRun
    outcomes: tuple[ScopeOutcome, ...]
    results: dict[str, DNAAnalysisResult]
    persistence_errors: dict[str, str] = field(default_factory=dict)

    @property
    def profiles(self) -> tuple[CustomerDNAProfile, ...]:
        """All profiles of succeeded scopes, in requested scope order."""
        rows: list[CustomerDNAProfile] = []
        for outcome in self.outcomes:
            if outcome.succeeded:
                rows.extend(self.results[outcome.scope_key].profiles)
        return tuple(rows)

    @property
    def scopes_failed(self) -> tuple[str, ...]:
        return tuple(o.scope_key for o in self.outcomes if not o.succeeded)

    def outcome(self, scope_key: str) -> ScopeOutcome:
        for outcome in self.outcomes:
            if outcome.scope_key == scope_key:
                return outcome
        raise KeyError(scope_key)


def _analyze_scope(
    scope_key: str,
    transactions: Sequence[Transaction],
    reference_time: datetime,
    config: DNAConfig,
) -> tuple[ScopeOutcome, Optional[DNAAnalysisResult]]:
    """Analyse one scope and convert any failure into a failed outcome.

    Module-level so it can run inside a worker process.
    """
    start_time = time.time()
    try:
        result = analyze_customer_dna(
            transactions, reference_time, config=config, scope_key=scope_key
        )
    except Exception as e:
        return (
            ScopeOutcome(
                scope_key=scope_key,
                succeeded=False,
                error_type=type(e).__name__,
                error_message=str(e),
                duration_ms=(time.time() - start_time) * 1000,
            ),
            None,
        )

    return (
        ScopeOutcome(
            scope_key=scope_key,
            succeeded=True,
            customers_processed=result.customers_processed,
            customers_failed=result.customers_failed,
            churn_accuracy=result.churn_accuracy,
            duration_ms=(time.time() - start_time) * 1000,
        ),
        result,
    )


ScopeTask = tuple[str, list[Transaction], datetime, DNAConfig]
ScopeOutput = tuple[ScopeOutcome, Optional[DNAAnalysisResult]]

# Interval between checks on in-flight scopes
POLL_SECONDS = 0.05


def _timeout_output(scope_key: str, timeout: float) -> ScopeOutput:
    return (
        ScopeOutcome(
            scope_key=scope_key,
            succeeded=False,
            error_type="TimeoutError",
            error_message=f"Scope {scope_key!r} exceeded {timeout}s",
            duration_ms=timeout * 1000,
        ),
        None,
    )


def _drain_pool(
    pool: multiprocessing.pool.Pool,
    workers: int,
    tasks: list[ScopeTask],
    queued: list[int],
    outputs: dict[int, ScopeOutput],
    timeout: Optional[float],
) -> list[int]:
    """Run queued tasks with at most ``workers`` in flight.

    A task is submitted only when a worker is free, so its deadline counts
    from the moment it starts. Once a task times out its worker is stuck:
    no further task is submitted, in-flight tasks are collected up to their
    own deadlines, and the tasks that never started are returned.
    """
    queued = list(queued)
    running: dict[int, tuple[multiprocessing.pool.AsyncResult, float]] = {}
    stalled = False

    while running or (queued and not stalled):
        while queued and not stalled and len(running) < workers:
            index = queued.pop(0)
            deadline = time.monotonic() + timeout if timeout is not None else math.inf
            running[index] = (pool.apply_async(_analyze_scope, tasks[index]), deadline)

        progressed = False
        now = time.monotonic()
        for index, (async_result, deadline) in list(running.items()):
            if async_result.ready():
                outputs[index] = async_result.get()
            elif now >= deadline:
                scope_key = tasks[index][0]
                logger.warning("scope_timed_out", scope_key=scope_key, timeout_s=timeout)
                outputs[index] = _timeout_output(scope_key, timeout)
                stalled = True
            else:
                continue
            del running[index]
            progressed = True

        if not progressed:
            time.sleep(POLL_SECONDS)

    return queued


def _analyze_scopes_parallel(
    tasks: list[ScopeTask],
    config: DNAConfig,
) -> list[ScopeOutput]:
    outputs: dict[int, ScopeOutput] = {}
    queued = list(range(len(tasks)))
    while queued:
        workers = min(config.max_workers, len(queued))
        # Leaving the context terminates workers still stuck on a timed-out scope
        with multiprocessing.Pool(processes=workers) as pool:
            queued = _drain_pool(
                pool, workers, tasks, queued, outputs, config.scope_timeout_seconds
            )
        if queued:
            logger.info(
                "scope_pool_restarted",
                pending=[tasks[index][0] for index in queued],
            )
    return [outputs[index] for index in range(len(tasks))]


def _run_churn_accuracy(results: dict[str, DNAAnalysisResult]) -> Optional[float]:
    """The "all" scope's accuracy when available, else pooled over scopes."""
    if ALL_SCOPES in results:
        return results[ALL_SCOPES].churn_accuracy
    return ChurnBacktest.combine(r.churn_backtest for r in results.values()).accuracy


def run_dna_batch(
    transactions: Sequence[Transaction],
    config: DNAConfig | None = None,
    sink: ProfileSink | None = None,
    run_id: str | None = None,
) -> BatchResult:
    """Run the DNA analysis for every configured scope.

    Args:
        transactions: Transactions for all scopes
        config: Run configuration; ``config.scope_keys`` lists the scopes
        sink: Optional destination for profile rows of succeeded scopes
        run_id: Identifier of the run (generated when omitted)

    Returns:
        BatchResult with per-scope outcomes and the run summary

    Raises:
        MissingDataError: If no scope keys are requested, or the reference
            time must be inferred from an empty input
        ValueError: If timezone-aware and naive datetimes are mixed across
            the transactions and the configured reference time

    Example:
        >>> from datetime import datetime
        >>> transactions = [
        ...     Transaction("C1", datetime(2024, 1, 1), 10.0, "A"),
        ...     Transaction("C1", datetime(2024, 1, 11), 10.0, "A"),
        ... ]
        >>> config = DNAConfig(scope_keys=("A", "B", "all"))
        >>> batch = run_dna_batch(transactions, config)  # doctest: +SKIP
        >>> batch.run.summary()["scopes_succeeded"]  # doctest: +SKIP
        2
    """
    config = config or DNAConfig()
    if not config.scope_keys:
        raise MissingDataError("scope_keys", "At least one scope key must be requested")

    check_timezones(transactions, config.reference_time)

    reference_time = config.reference_time or latest_timestamp(transactions)
    run_id = run_id or uuid.uuid4().hex
    scope_keys = config.scope_keys

    logger.info(
        "dna_batch_started",
        run_id=run_id,
        scopes=list(scope_keys),
        reference_time=reference_time.isoformat(),
        transactions=len(transactions),
        max_workers=config.max_workers,
    )
    start_time = time.time()

    tasks = [
        (scope_key, select_scope(transactions, scope_key), reference_time, config)
        for scope_key in scope_keys
    ]
    if config.max_workers > 1 and len(tasks) > 1:
        outputs = _analyze_scopes_parallel(tasks, config)
    else:
        outputs = [_analyze_scope(*task) for task in tasks]

    outcomes: list[ScopeOutcome] = []
    results: dict[str, DNAAnalysisResult] = {}
    for outcome, result in outputs:
        outcomes.append(outcome)
        if outcome.succeeded:
            results[outcome.scope_key] = result
            logger.info(
                "scope_analysis_succeeded",
                scope_key=outcome.scope_key,
                customers_processed=outcome.customers_processed,
                customers_failed=outcome.customers_failed,
                churn_accuracy=outcome.churn_accuracy,
                duration_ms=outcome.duration_ms,
            )
        else:
            logger.error(
                "scope_analysis_failed",
                scope_key=outcome.scope_key,
                error=outcome.error_message,
                error_type=outcome.error_type,
                duration_ms=outcome.duration_ms,
            )

    persistence_errors: dict[str, str] = {}
    if sink is not None:
        for outcome in outcomes:
            if not outcome.succeeded:
                continue
            frame = profiles_frame_for_persistence(
                results[outcome.scope_key].profiles,
                run_id=run_id,
                reference_time=reference_time,
                platform_id=config.platform_id,
            )
            try:
                write_with_retry(
                    sink,
                    outcome.scope_key,
                    frame,
                    attempts=config.persistence_attempts,
                    wait_seconds=config.persistence_wait_seconds,
                )
            except PersistenceError as e:
                logger.error(
                    "persistence_failed",
                    scope_key=outcome.scope_key,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                persistence_errors[outcome.scope_key] = str(e)

    succeeded = tuple(o.scope_key for o in outcomes if o.succeeded)
    run = AnalysisRun(
        run_id=run_id,
        reference_time=reference_time,
        scope_keys_requested=tuple(scope_keys),
        scope_keys_succeeded=succeeded,
        churn_accuracy=_run_churn_accuracy(results),
        total_customers=len(
            {p.customer_id for r in results.values() for p in r.profiles}
        ),
    )

    logger.info(
        "dna_batch_complete",
        run_id=run_id,
        executed=list(succeeded),
        failed=[o.scope_key for o in outcomes if not o.succeeded],
        persistence_failed=list(persistence_errors),
        execution_time_ms=(time.time() - start_time) * 1000,
        **run.summary(),
    )

    return BatchResult(
        run=run,
        outcomes=tuple(outcomes),
        results=results,
        persistence_errors=persistence_errors,
    )
