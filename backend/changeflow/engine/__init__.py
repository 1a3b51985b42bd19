"""Reconciliation engine: reconciler, dispatcher, processor and worker."""

from .dispatcher import ArchiveChanges, DispatchResult, StatusDispatcher
from .processor import Outcome, ProcessResult, TenantProcessor
from .reconciler import ReconcileAction, ReconcileResult, TriggerReconciler
from .summary import ExecutionSummary
from .worker import TenantWorker

__all__ = [
    "ArchiveChanges",
    "DispatchResult",
    "ExecutionSummary",
    "Outcome",
    "ProcessResult",
    "ReconcileAction",
    "ReconcileResult",
    "StatusDispatcher",
    "TenantProcessor",
    "TenantWorker",
    "TriggerReconciler",
]
