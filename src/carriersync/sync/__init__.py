"""Sync module: continuation token, orchestrator, carrier client and invocation handler."""

from carriersync.sync.handler import InvocationHandler
from carriersync.sync.orchestrator import InvocationResult, SyncOrchestrator, SyncStats
from carriersync.sync.retry import Deadline, RetryPolicy
from carriersync.sync.state import Phase, SyncState

__all__ = [
    "Deadline",
    "InvocationHandler",
    "InvocationResult",
    "Phase",
    "RetryPolicy",
    "SyncOrchestrator",
    "SyncState",
    "SyncStats",
]
