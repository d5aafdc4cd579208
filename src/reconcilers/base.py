"""
Reconciler Base - Abstract interface for request reconcilers.

A reconciler owns the convergence logic for one resource kind. The
controller hands it one key at a time together with a ReconcilerContext
that carries every shared collaborator, so reconcilers hold no global state.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from backoff import BackoffTracker
from events import EventRecorder
from kube import ClusterClient
from resources import ResourceKey

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Result from a reconciler's reconcile() call."""

    success: bool = False
    message: str = ""
    requeue_after: Optional[float] = None

    @property
    def done(self) -> bool:
        """True when the key should be dropped from the queue."""
        return self.requeue_after is None


class ReconcilerContext:
    """
    Context provided to reconcilers by the controller.

    Gives reconcilers access to the cluster API, the event sink, the
    per-key backoff state and the process shutdown signal.
    """

    def __init__(
        self,
        client: ClusterClient,
        recorder: EventRecorder,
        backoff: BackoffTracker,
        shutdown_event: Optional[asyncio.Event] = None,
        conflict_retry_steps: int = 5,
    ):
        self.client = client
        self.recorder = recorder
        self.backoff = backoff
        self.shutdown_event = shutdown_event or asyncio.Event()
        self.conflict_retry_steps = conflict_retry_steps

    @property
    def cancelled(self) -> bool:
        """True once the operator has started shutting down."""
        return self.shutdown_event.is_set()


class Reconciler(ABC):
    """
    Abstract base class for reconcilers.

    Implementations must be idempotent: the same key may be reconciled any
    number of times, including after an attempt was interrupted part way.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this reconciler."""
        pass

    @abstractmethod
    async def reconcile(
        self, key: ResourceKey, ctx: ReconcilerContext
    ) -> ReconcileResult:
        """
        Reconcile a single resource.

        Compare desired state against actual state and take action.

        Args:
            key: Namespace and name of the resource.
            ctx: ReconcilerContext with the collaborators to use.

        Returns:
            ReconcileResult; a set requeue_after asks the controller to try
            the key again after that many seconds.
        """
        pass
