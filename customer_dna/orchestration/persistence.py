"""Persistence boundary for customer DNA profiles.

Profiles are stored append-only: every run appends its rows tagged with
``platform_id``, ``scope_key``, ``run_id`` and ``reference_time``. Earlier runs
are never overwritten; :func:`latest_profiles` selects the most recently
appended run for each ``(platform_id, scope_key)``.

Writes are retried with exponential backoff on transient I/O errors. Once
retries are exhausted the failure surfaces as :class:`PersistenceError`,
which the batch orchestrator reports separately from analysis failures.
"""

from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Optional, Protocol, Sequence

import pandas as pd
import structlog
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from customer_dna.analyses.dna import EXTENDED_PROFILE_COLUMNS, CustomerDNAProfile
from customer_dna.exceptions import PersistenceError

logger = structlog.get_logger(__name__)

RUN_COLUMNS = ("platform_id", "run_id", "reference_time")

PERSISTED_COLUMNS = RUN_COLUMNS + EXTENDED_PROFILE_COLUMNS

# Errors worth retrying; anything else fails the write immediately
TRANSIENT_ERRORS = (OSError, ConnectionError, TimeoutError)

# Upper bound on a single backoff sleep, in seconds
MAX_BACKOFF_SECONDS = 10.0


class ProfileSink(Protocol):
    """Destination for persisted profile rows."""

    def write(self, scope_key: str, rows: pd.DataFrame) -> None:
        ...


class InMemoryProfileSink:
    """Sink that keeps every written frame in memory (tests, notebooks)."""

    def __init__(self) -> None:
        self.writes: list[tuple[str, pd.DataFrame]] = []

    def write(self, scope_key: str, rows: pd.DataFrame) -> None:
        self.writes.append((scope_key, rows.copy()))

    def read(self) -> pd.DataFrame:
        if not self.writes:
            return pd.DataFrame(columns=list(PERSISTED_COLUMNS))
        return pd.concat([rows for _, rows in self.writes], ignore_index=True)


class CSVProfileSink:
    """Append profile rows to a CSV file, writing the header once.

    Each write is all-or-nothing: rows are rendered up front and, if the
    append fails part-way, the file is truncated back to its previous size
    so a retried write never leaves duplicate or torn rows.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def write(self, scope_key: str, rows: pd.DataFrame) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        is_new = not self.path.exists() or self.path.stat().st_size == 0
        data = rows.to_csv(index=False, header=is_new).encode("utf-8")

        with open(self.path, "ab", buffering=0) as handle:
            offset = handle.seek(0, os.SEEK_END)
            try:
                self._write_bytes(handle, data)
            except OSError:
                handle.truncate(offset)
                raise

    def _write_bytes(self, handle: BinaryIO, data: bytes) -> None:
        view = memoryview(data)
        while view:
            view = view[handle.write(view) :]

    def read(self) -> pd.DataFrame:
        if not self.path.exists() or self.path.stat().st_size == 0:
            return pd.DataFrame(columns=list(PERSISTED_COLUMNS))
        return pd.read_csv(
            self.path,
            dtype={"customer_id": str, "scope_key": str, "run_id": str, "platform_id": str},
        )


def profiles_frame_for_persistence(
    profiles: Sequence[CustomerDNAProfile],
    run_id: str,
    reference_time: datetime,
    platform_id: Optional[str] = None,
) -> pd.DataFrame:
    """Profile rows augmented with run identifiers, in persisted column order."""
    records = []
    for profile in profiles:
        row = {
            "platform_id": platform_id,
            "run_id": run_id,
            "reference_time": reference_time.isoformat(),
        }
        row.update(profile.as_dict(extended=True))
        records.append(row)
    return pd.DataFrame.from_records(records, columns=list(PERSISTED_COLUMNS))


def write_with_retry(
    sink: ProfileSink,
    scope_key: str,
    rows: pd.DataFrame,
    attempts: int = 3,
    wait_seconds: float = 1.0,
) -> None:
    """Write rows to a sink, retrying transient failures.

    Args:
        sink: Destination for the rows
        scope_key: Scope the rows belong to
        rows: Frame from :func:`profiles_frame_for_persistence`
        attempts: Total write attempts
        wait_seconds: Multiplier of the exponential backoff between attempts

    Raises:
        PersistenceError: If every attempt failed with a transient error
    """

    def _log_retry(retry_state) -> None:
        logger.warning(
            "persistence_write_retry",
            scope_key=scope_key,
            attempt=retry_state.attempt_number,
            error=str(retry_state.outcome.exception()),
        )

    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=wait_seconds, max=MAX_BACKOFF_SECONDS),
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        before_sleep=_log_retry,
        reraise=True,
    )
    try:
        retrying(sink.write, scope_key, rows)
    except TRANSIENT_ERRORS as e:
        raise PersistenceError(
            scope_key,
            f"Failed to persist {len(rows)} rows for scope {scope_key!r} "
            f"after {attempts} attempts: {e}",
        ) from e
    except Exception as e:
        raise PersistenceError(
            scope_key,
            f"Failed to persist {len(rows)} rows for scope {scope_key!r}: "
            f"{type(e).__name__}: {e}",
        ) from e

    logger.info("profiles_persisted", scope_key=scope_key, rows=len(rows))


def latest_profiles(frame: pd.DataFrame) -> pd.DataFrame:
    """Rows of the most recently appended run per ``(platform_id, scope_key)``."""
    if frame.empty:
        return frame.copy()
    keys = ["platform_id", "scope_key"]
    latest_runs = (
        frame.groupby(keys, dropna=False, sort=False)["run_id"].last().reset_index()
    )
    return frame.merge(latest_runs, on=keys + ["run_id"], how="inner")
