"""Reconciliation layer: position diffing, trade materialization and the
evaluation state machine, driven by :class:`ReconciliationScheduler`.
"""

from tradesync.reconciliation.evaluation import EvaluationQueue
from tradesync.reconciliation.materializer import MaterializeOutcome, TradeMaterializer
from tradesync.reconciliation.reconciler import (
    PositionDiff,
    PositionReconciler,
    diff_positions,
    stop_order_metadata,
)
from tradesync.reconciliation.scheduler import ReconciliationScheduler, SchedulerStatus
from tradesync.reconciliation.service import ReconciliationService

__all__ = [
    # Pass pipeline
    "PositionDiff",
    "diff_positions",
    "stop_order_metadata",
    "PositionReconciler",
    "MaterializeOutcome",
    "TradeMaterializer",
    # Annotation state
    "EvaluationQueue",
    # Facade and driver
    "ReconciliationService",
    "ReconciliationScheduler",
    "SchedulerStatus",
]
