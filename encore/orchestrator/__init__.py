"""Artist import orchestration: stage handlers and progress tracking."""

from .deps import StageDeps
from .importer import ImportHandle, ImportOrchestrator
from .progress import ImportStatusSnapshot, ProgressTracker
from .results import ItemResult, SkipReason, StageSummary

__all__ = [
    "ImportHandle",
    "ImportOrchestrator",
    "ImportStatusSnapshot",
    "ItemResult",
    "ProgressTracker",
    "SkipReason",
    "StageDeps",
    "StageSummary",
]
