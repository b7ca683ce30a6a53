"""Watch registration broker, lifecycle manager and state persistence."""

from mailflow.watch.broker import WatchBroker, WatchResult, run_repeated
from mailflow.watch.manager import WatchLifecycleManager
from mailflow.watch.state import (
    FileWatchStateStore,
    InMemoryWatchStateStore,
    WatchRegistration,
    WatchStateStore,
)

__all__ = [
    "FileWatchStateStore",
    "InMemoryWatchStateStore",
    "WatchBroker",
    "WatchLifecycleManager",
    "WatchRegistration",
    "WatchResult",
    "WatchStateStore",
    "run_repeated",
]
