"""
Reconcilers package.

Each reconciler drives one resource kind to its declared state.
"""

from reconcilers.base import Reconciler, ReconcilerContext, ReconcileResult
from reconcilers.unregister_volume import UnregisterVolumeReconciler

__all__ = [
    "Reconciler",
    "ReconcilerContext",
    "ReconcileResult",
    "UnregisterVolumeReconciler",
]
