"""agentsync: Managed content synchronization for AI coding agents."""

__version__ = "0.1.0"
__author__ = "agentsync Contributors"
__description__ = "Managed content synchronization for AI coding agents"

from .integrity import check_integrity, status
from .models import ContentClass, SourceSpec, SyncOutcome
from .pipeline import PipelineState, SyncPipeline, run_sync

__all__ = [
    "ContentClass",
    "PipelineState",
    "SourceSpec",
    "SyncOutcome",
    "SyncPipeline",
    "check_integrity",
    "run_sync",
    "status",
]
