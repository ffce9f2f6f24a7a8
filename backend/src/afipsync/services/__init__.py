"""
Services package - Invoicing runs and their coordination.
"""

from .reconciliation import (
    BatchResult,
    OrderOutcome,
    OutcomeStatus,
    ReconciliationOrchestrator,
    SalesPointLocks,
    SyncResult,
)

__all__ = [
    "BatchResult",
    "OrderOutcome",
    "OutcomeStatus",
    "ReconciliationOrchestrator",
    "SalesPointLocks",
    "SyncResult",
]
