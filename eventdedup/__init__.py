"""Event Deduplication Engine - Detect, merge and audit duplicate event records."""

from .batch import BatchCoordinator, BatchResult, ProcessingMode
from .config import ConfigurationError, DedupConfig, load_config
from .engine import DeduplicationEngine, HealthReport, MergeResult
from .ledger import HistoryFilter, MergeLedger
from .loader import load_events
from .models import ConflictStrategy, EventRecord, MergeStrategy

__version__ = "1.0.0"

__all__ = [
    "BatchCoordinator",
    "BatchResult",
    "ConfigurationError",
    "ConflictStrategy",
    "DedupConfig",
    "DeduplicationEngine",
    "EventRecord",
    "HealthReport",
    "HistoryFilter",
    "MergeLedger",
    "MergeResult",
    "MergeStrategy",
    "ProcessingMode",
    "load_config",
    "load_events",
]
