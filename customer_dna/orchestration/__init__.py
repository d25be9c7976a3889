"""Multi-scope orchestration and persistence of customer DNA runs."""

from .batch import AnalysisRun, BatchResult, ScopeOutcome, run_dna_batch
from .persistence import (
    CSVProfileSink,
    InMemoryProfileSink,
    ProfileSink,
    latest_profiles,
    profiles_frame_for_persistence,
    write_with_retry,
)

__all__ = [
    "AnalysisRun",
    "BatchResult",
    "CSVProfileSink",
    "InMemoryProfileSink",
    "ProfileSink",
    "ScopeOutcome",
    "latest_profiles",
    "profiles_frame_for_persistence",
    "run_dna_batch",
    "write_with_retry",
]
