"""
Admission Validation - validating webhook logic.

Validates StorageClass and CnsRegisterVolume objects before the API server
persists them. Each route handles exactly one object kind; requests for any
other kind are allowed unchanged.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from kube import ClusterClient
from validation import (
    REGISTER_VOLUME_SPEC_SCHEMA,
    STORAGE_CLASS_SCHEMA,
    validate_against_schema,
)

logger = logging.getLogger(__name__)

IN_TREE_VSPHERE_PROVISIONER = "kubernetes.io/vsphere-volume"
CSI_VSPHERE_PROVISIONER = "csi.vsphere.vmware.com"

# StorageClass parameters only valid for volumes migrated from the in-tree
# provisioner; users may not set them directly.
UNSUPPORTED_PARAMETERS = frozenset(
    {
        "csimigration",
        "diskformat-migrationparam",
        "hostfailurestotolerate-migrationparam",
        "forceprovisioning-migrationparam",
        "cachereservation-migrationparam",
        "diskstripes-migrationparam",
        "objectspacereservation-migrationparam",
        "iopslimit-migrationparam",
    }
)

VOLUME_EXPANSION_ERROR_MESSAGE = (
    "AllowVolumeExpansion can not be set to true on the in-tree vSphere StorageClass"
)
MIGRATION_PARAM_ERROR_MESSAGE = (
    "Invalid StorageClass Parameters. "
    "Migration specific parameters should not be used in the StorageClass"
)


class AdmissionKind(Enum):
    """Object kinds the webhook validates."""

    STORAGE_CLASS = "StorageClass"
    REGISTER_VOLUME = "CnsRegisterVolume"


ROUTES: Dict[str, AdmissionKind] = {
    "/validate-storageclass": AdmissionKind.STORAGE_CLASS,
    "/validate-registervolume": AdmissionKind.REGISTER_VOLUME,
}


@dataclass
class AdmissionRequest:
    """The part of an AdmissionReview request the validators use."""

    uid: str
    kind: str
    operation: str = ""
    namespace: str = ""
    name: str = ""
    object: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AdmissionResponse:
    """Verdict for one admission request."""

    allowed: bool
    message: str = ""
    reason: str = ""
    uid: str = ""

    def to_review(self) -> Dict[str, Any]:
        """Wrap the verdict in an admission.k8s.io/v1 AdmissionReview."""
        response: Dict[str, Any] = {"uid": self.uid, "allowed": self.allowed}
        if self.message or self.reason:
            status: Dict[str, Any] = {}
            if self.message:
                status["message"] = self.message
            if self.reason:
                status["reason"] = self.reason
            response["status"] = status
        return {
            "apiVersion": "admission.k8s.io/v1",
            "kind": "AdmissionReview",
            "response": response,
        }


Validator = Callable[[AdmissionRequest], Awaitable[AdmissionResponse]]


def validate_storage_class(request: AdmissionRequest) -> AdmissionResponse:
    """
    Validate a StorageClass.

    Denies in-tree vSphere classes that allow volume expansion and CSI
    vSphere classes that carry migration-only parameters.
    """
    sc = request.object
    name = (sc.get("metadata") or {}).get("name", "")
    logger.info(f"Validating StorageClass: {name!r}")

    is_valid, error = validate_against_schema(sc, STORAGE_CLASS_SCHEMA)
    if not is_valid:
        return AdmissionResponse(allowed=False, message=error)

    provisioner = sc.get("provisioner")
    response = AdmissionResponse(allowed=True)

    if provisioner == IN_TREE_VSPHERE_PROVISIONER and sc.get("allowVolumeExpansion"):
        response = AdmissionResponse(
            allowed=False, reason=VOLUME_EXPANSION_ERROR_MESSAGE
        )
    elif provisioner == CSI_VSPHERE_PROVISIONER:
        parameters = sc.get("parameters") or {}
        if any(param in UNSUPPORTED_PARAMETERS for param in parameters):
            response = AdmissionResponse(
                allowed=False, reason=MIGRATION_PARAM_ERROR_MESSAGE
            )

    if response.allowed:
        logger.info(f"Validation of StorageClass: {name!r} Passed")
    else:
        logger.info(f"Validation of StorageClass: {name!r} Failed")
    return response


async def validate_register_volume(
    request: AdmissionRequest, client: ClusterClient
) -> AdmissionResponse:
    """
    Validate a CnsRegisterVolume.

    Denies registering a volume ID that is already bound to a different
    claim than the one requested. Specs that name the disk by diskURLPath
    instead of volumeID are allowed.
    """
    obj = request.object
    metadata = obj.get("metadata") or {}
    namespace = metadata.get("namespace") or request.namespace
    spec = obj.get("spec") or {}
    logger.info(f"Validating CnsRegisterVolume: {metadata.get('name', '')!r}")

    is_valid, error = validate_against_schema(spec, REGISTER_VOLUME_SPEC_SCHEMA)
    if not is_valid:
        return AdmissionResponse(allowed=False, message=f"Invalid spec: {error}")

    volume_id = spec.get("volumeID")
    if not volume_id:
        # Registered by diskURLPath; no volume handle to compare against.
        return AdmissionResponse(allowed=True)

    try:
        volumes = await client.list_persistent_volumes()
    except Exception as e:
        logger.error(f"Failed to get persistent volume list from API server: {e}")
        return AdmissionResponse(allowed=True)

    for pv in volumes:
        pv_spec = pv.get("spec") or {}
        handle = (pv_spec.get("csi") or {}).get("volumeHandle")
        phase = (pv.get("status") or {}).get("phase")
        claim_ref = pv_spec.get("claimRef") or {}
        if handle != volume_id or phase != "Bound":
            continue
        if (
            claim_ref.get("name") != spec["pvcName"]
            or claim_ref.get("namespace") != namespace
        ):
            msg = (
                f"VolumeID: {volume_id} is already attached to PV: "
                f"{pv['metadata']['name']} and bound to PVC: {claim_ref.get('name')} "
                f"in namespace: {claim_ref.get('namespace')}"
            )
            return AdmissionResponse(allowed=False, message=msg, reason=msg)

    return AdmissionResponse(allowed=True)


class AdmissionHandler:
    """Dispatches admission requests to the validator for their route."""

    def __init__(self, client: ClusterClient):
        self._client = client

        async def storage_class(request: AdmissionRequest) -> AdmissionResponse:
            return validate_storage_class(request)

        async def register_volume(request: AdmissionRequest) -> AdmissionResponse:
            return await validate_register_volume(request, self._client)

        self._validators: Dict[AdmissionKind, Validator] = {
            AdmissionKind.STORAGE_CLASS: storage_class,
            AdmissionKind.REGISTER_VOLUME: register_volume,
        }
        missing = set(AdmissionKind) - set(self._validators)
        if missing:
            names = sorted(k.value for k in missing)
            raise RuntimeError(f"No validator registered for {names}")

    async def review(
        self, kind: AdmissionKind, request: Optional[AdmissionRequest]
    ) -> AdmissionResponse:
        """
        Validate a request received on the route for `kind`.

        Args:
            kind: The kind served by the route the request arrived on.
            request: The decoded request; None for a review without one.

        Returns:
            The verdict, carrying the request's UID.
        """
        if request is None:
            return AdmissionResponse(allowed=True)

        if request.kind != kind.value:
            response = AdmissionResponse(allowed=True)
        else:
            response = await self._validators[kind](request)

        response.uid = request.uid
        return response
