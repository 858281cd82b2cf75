"""
Run lifecycle: persistence, state machine and reply extraction.

Modules:
- models: run record, run options, state and reason constants
- paths: on-disk layout of a run directory
- store: file-backed and in-memory run stores
- state_machine: legal transitions and terminal finality
- extraction: DOM snapshot classification and stall tracking
- watcher: bounded polling loop until a reply settles
- thinking: incremental reads of the reasoning text
- cleanup: expiry of old run directories
"""

from .cleanup import cleanup_runs_root
from .extraction import DomSnapshot, ExtractionProtocol, classify
from .models import (
    ACTIVE_STATES,
    CANCELED,
    COMPLETED,
    FAILED,
    NEEDS_USER,
    PENDING,
    RUNNING,
    TERMINAL_STATES,
    RunOptions,
    RunRecord,
    new_run_id,
)
from .state_machine import RunStateMachine
from .store import FileRunStore, MemoryRunStore, RunStore
from .watcher import CompletionOutcome, watch_completion

__all__ = [
    "ACTIVE_STATES",
    "CANCELED",
    "COMPLETED",
    "CompletionOutcome",
    "DomSnapshot",
    "ExtractionProtocol",
    "FAILED",
    "FileRunStore",
    "MemoryRunStore",
    "NEEDS_USER",
    "PENDING",
    "RUNNING",
    "RunOptions",
    "RunRecord",
    "RunStateMachine",
    "RunStore",
    "TERMINAL_STATES",
    "classify",
    "cleanup_runs_root",
    "new_run_id",
    "watch_completion",
]
