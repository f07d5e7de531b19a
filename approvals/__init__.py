"""
Publication Approvals — asynchronous approval-workflow core.

A conditional-write status store with a change feed, two independent
feed consumers (Change Relay, Resumption Bridge) and a durable
orchestrator that suspends until a publication's contract is approved.
"""

__version__ = "0.1.0"

from approvals.store import StatusStore
from approvals.types import (
    LifecycleState,
    RejectReason,
    StaleResumeToken,
    StatusRecord,
    TransientStoreError,
    WriteResult,
)

__all__ = [
    "LifecycleState",
    "RejectReason",
    "StaleResumeToken",
    "StatusRecord",
    "StatusStore",
    "TransientStoreError",
    "WriteResult",
]
