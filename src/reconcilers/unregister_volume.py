"""
CnsUnregisterVolume reconciler.

Unregisters a volume from the cluster without destroying its backing
storage:

1. Validate the request spec.
2. Resolve the claim named by the request to its bound volume.
3. Set the volume's reclaim policy to Retain so the storage backend keeps
   the underlying disk when the objects go away.
4. Delete the claim.
5. Delete the volume.
6. Mark the request unregistered.

Every step is idempotent, so a failed or interrupted attempt is retried by
running the whole workflow again from step 1 after a backoff delay.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from kube import ApiError, NotFoundError, retry_on_conflict
from reconcilers.base import Reconciler, ReconcilerContext, ReconcileResult
from resources import RECLAIM_POLICY_RETAIN, ResourceKey, UnregisterRequest

logger = logging.getLogger(__name__)

PVC_NAME_NOT_SPECIFIED = "Pvc name not specified in the spec"


class WorkflowError(Exception):
    """A workflow step failed; the attempt is requeued with backoff."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class WorkflowAborted(Exception):
    """The operator is shutting down; the attempt stops between steps."""


def validate_spec(request: UnregisterRequest) -> None:
    """
    Validate the request spec.

    Raises:
        WorkflowError: If the spec is missing required values.
    """
    if not request.pvc_name:
        raise WorkflowError(PVC_NAME_NOT_SPECIFIED)


def find_volume_for_claim(
    volumes: List[Dict[str, Any]], namespace: str, claim_name: str
) -> Optional[str]:
    """Return the name of the volume whose claimRef points at the claim."""
    for pv in volumes:
        claim_ref = (pv.get("spec") or {}).get("claimRef") or {}
        if (
            claim_ref.get("namespace") == namespace
            and claim_ref.get("name") == claim_name
        ):
            return pv["metadata"]["name"]
    return None


class UnregisterVolumeReconciler(Reconciler):
    """Drives CnsUnregisterVolume requests to status.unregistered == true."""

    @property
    def name(self) -> str:
        return "cnsunregistervolume"

    async def reconcile(
        self, key: ResourceKey, ctx: ReconcilerContext
    ) -> ReconcileResult:
        try:
            request = await ctx.client.get_unregister_request(key.namespace, key.name)
        except NotFoundError:
            logger.info(
                f"CnsUnregisterVolume {key} not found. "
                f"Ignoring since object must be deleted."
            )
            ctx.backoff.forget(key)
            return ReconcileResult(success=True, message="Resource not found")

        delay = ctx.backoff.get_or_init(key)

        if request.unregistered:
            ctx.backoff.forget(key)
            return ReconcileResult(success=True, message="Volume already unregistered")

        logger.info(
            f"Reconciling CnsUnregisterVolume {request.name!r} in namespace "
            f"{request.namespace!r}, requeue delay {delay}s"
        )

        try:
            await self._run_workflow(request, ctx)
        except WorkflowAborted:
            logger.info(f"Reconciliation of {key} interrupted by shutdown")
            return ReconcileResult(
                success=False,
                message="Reconciliation interrupted by shutdown",
                requeue_after=delay,
            )
        except WorkflowError as e:
            logger.error(f"Failed to unregister {key}: {e.message}")
            await self._set_error(request, e.message, ctx)
            return ReconcileResult(
                success=False, message=e.message, requeue_after=delay
            )
        except Exception as e:
            logger.error(f"Unexpected error unregistering {key}: {e}", exc_info=True)
            msg = f"Failed to unregister volume: {e}"
            await self._set_error(request, msg, ctx)
            return ReconcileResult(success=False, message=msg, requeue_after=delay)

        msg = f"Successfully unregistered the volume on namespace: {request.namespace}"
        try:
            await self._set_success(request, msg, ctx)
        except Exception as e:
            msg = f"Failed to update CnsUnregisterVolume instance with error: {e}"
            logger.error(msg)
            await self._set_error(request, msg, ctx)
            return ReconcileResult(success=False, message=msg, requeue_after=delay)

        ctx.backoff.forget(key)
        logger.info(f"{key}: {msg}")
        return ReconcileResult(success=True, message=msg)

    async def _run_workflow(
        self, request: UnregisterRequest, ctx: ReconcilerContext
    ) -> None:
        validate_spec(request)
        self._check_cancelled(ctx)

        pv_name = await self._resolve_volume(request, ctx)
        self._check_cancelled(ctx)

        await self._protect_volume(pv_name, ctx)
        self._check_cancelled(ctx)

        await self._delete_claim(request, ctx)
        self._check_cancelled(ctx)

        await self._delete_volume(pv_name, ctx)

    @staticmethod
    def _check_cancelled(ctx: ReconcilerContext) -> None:
        if ctx.cancelled:
            raise WorkflowAborted()

    async def _resolve_volume(
        self, request: UnregisterRequest, ctx: ReconcilerContext
    ) -> str:
        """
        Find the volume bound to the request's claim.

        When the claim is already gone (an earlier attempt deleted it) the
        volume is located through its claimRef instead.
        """
        try:
            pvc = await ctx.client.get_persistent_volume_claim(
                request.namespace, request.pvc_name
            )
        except NotFoundError:
            volumes = await ctx.client.list_persistent_volumes()
            pv_name = find_volume_for_claim(
                volumes, request.namespace, request.pvc_name
            )
            if pv_name is None:
                raise WorkflowError(
                    f"Unable to get PVC object {request.pvc_name!r} in namespace "
                    f"{request.namespace!r}"
                )
            logger.info(
                f"PVC {request.pvc_name!r} already deleted, continuing with PV "
                f"{pv_name!r}"
            )
            return pv_name
        except ApiError as e:
            raise WorkflowError(
                f"Unable to get PVC object {request.pvc_name!r} in namespace "
                f"{request.namespace!r}: {e.message}"
            )

        pv_name = (pvc.get("spec") or {}).get("volumeName")
        if not pv_name:
            raise WorkflowError(
                f"PVC {request.pvc_name!r} in namespace {request.namespace!r} "
                f"is not bound to a PV"
            )
        return pv_name

    async def _protect_volume(self, pv_name: str, ctx: ReconcilerContext) -> None:
        """Set the volume's reclaim policy to Retain."""

        async def update() -> Dict[str, Any]:
            pv = await ctx.client.get_persistent_volume(pv_name)
            spec = pv.setdefault("spec", {})
            if spec.get("persistentVolumeReclaimPolicy") == RECLAIM_POLICY_RETAIN:
                return pv
            spec["persistentVolumeReclaimPolicy"] = RECLAIM_POLICY_RETAIN
            return await ctx.client.update_persistent_volume(pv)

        try:
            await retry_on_conflict(update, steps=ctx.conflict_retry_steps)
        except ApiError as e:
            raise WorkflowError(
                f"Unable to set reclaim policy {RECLAIM_POLICY_RETAIN} on PV "
                f"{pv_name!r}: {e.message}"
            )

    async def _delete_claim(
        self, request: UnregisterRequest, ctx: ReconcilerContext
    ) -> None:
        try:
            await ctx.client.delete_persistent_volume_claim(
                request.namespace, request.pvc_name
            )
        except NotFoundError:
            logger.debug(f"PVC {request.pvc_name!r} already deleted")
        except ApiError as e:
            raise WorkflowError(
                f"Failed to delete PVC {request.pvc_name!r} in namespace "
                f"{request.namespace!r}: {e.message}"
            )

    async def _delete_volume(self, pv_name: str, ctx: ReconcilerContext) -> None:
        # Reclaim policy is Retain, so the PV has to be removed explicitly.
        try:
            await ctx.client.delete_persistent_volume(pv_name)
        except NotFoundError:
            logger.debug(f"PV {pv_name!r} already deleted")
        except ApiError as e:
            raise WorkflowError(f"Failed to delete PV {pv_name!r}: {e.message}")

    async def _update_status(
        self,
        request: UnregisterRequest,
        mutate: Callable[[UnregisterRequest], None],
        ctx: ReconcilerContext,
    ) -> UnregisterRequest:
        """Apply mutate to the latest copy of the request and write it back."""
        latest = request

        async def update() -> UnregisterRequest:
            nonlocal latest
            if latest is None:
                latest = await ctx.client.get_unregister_request(
                    request.namespace, request.name
                )
            mutate(latest)
            try:
                return await ctx.client.update_unregister_request(latest)
            except Exception:
                latest = None
                raise

        return await retry_on_conflict(update, steps=ctx.conflict_retry_steps)

    async def _set_error(
        self, request: UnregisterRequest, message: str, ctx: ReconcilerContext
    ) -> None:
        """Record a failure on the request and grow its backoff delay."""

        def mutate(req: UnregisterRequest) -> None:
            req.error = message

        try:
            await self._update_status(request, mutate, ctx)
        except Exception as e:
            logger.error(
                f"Failed to update CnsUnregisterVolume {request.key} status: {e}"
            )
        await ctx.recorder.failure(request, message)
        ctx.backoff.double(request.key)

    async def _set_success(
        self, request: UnregisterRequest, message: str, ctx: ReconcilerContext
    ) -> None:
        """
        Mark the request unregistered.

        Raises:
            Exception: If the status could not be persisted.
        """

        def mutate(req: UnregisterRequest) -> None:
            req.unregistered = True
            req.error = ""

        await self._update_status(request, mutate, ctx)
        await ctx.recorder.success(request, message)
        ctx.backoff.reset(request.key)
