"""
Generic reconciliation engine: mutators, pipelines and the base reconciler.
"""

from reconcilers.base import (
    BaseReconciler,
    KindReconciler,
    ObjectOutcome,
    ReconcileResult,
)
from reconcilers.pipeline import MutatorPipeline, mutator
from reconcilers.registry import ReconcilerRegistry, discover_reconcilers

__all__ = [
    "BaseReconciler",
    "KindReconciler",
    "MutatorPipeline",
    "ObjectOutcome",
    "ReconcileResult",
    "ReconcilerRegistry",
    "discover_reconcilers",
    "mutator",
]
