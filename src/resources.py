"""
Resource model for CnsUnregisterVolume requests.

Converts between the wire representation served by the cluster API and the
in-memory request used by the reconciler.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, NamedTuple, Optional

API_GROUP = "cns.vmware.com"
API_VERSION = "v1alpha1"
KIND = "CnsUnregisterVolume"
PLURAL = "cnsunregistervolumes"

RECLAIM_POLICY_RETAIN = "Retain"


class ResourceKey(NamedTuple):
    """Stable (namespace, name) identity of a request."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class UnregisterRequest:
    """A declared request to unregister the volume behind a claim."""

    namespace: str
    name: str
    pvc_name: str = ""
    unregistered: bool = False
    error: str = ""
    resource_version: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.namespace, self.name)

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "UnregisterRequest":
        """
        Build a request from a CnsUnregisterVolume object.

        Args:
            obj: The object as returned by the cluster API.

        Returns:
            A new UnregisterRequest. The original object is kept so that
            fields this operator does not own survive an update.
        """
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        status = obj.get("status") or {}
        return cls(
            namespace=metadata.get("namespace", ""),
            name=metadata.get("name", ""),
            pvc_name=spec.get("pvcName") or "",
            unregistered=bool(status.get("unregistered", False)),
            error=status.get("error") or "",
            resource_version=metadata.get("resourceVersion"),
            raw=copy.deepcopy(obj),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Render the request back to its wire form."""
        obj = copy.deepcopy(self.raw)
        obj["apiVersion"] = f"{API_GROUP}/{API_VERSION}"
        obj["kind"] = KIND

        metadata = obj.setdefault("metadata", {})
        metadata["namespace"] = self.namespace
        metadata["name"] = self.name
        if self.resource_version is not None:
            metadata["resourceVersion"] = self.resource_version
        else:
            metadata.pop("resourceVersion", None)

        obj.setdefault("spec", {})["pvcName"] = self.pvc_name
        obj["status"] = {"unregistered": self.unregistered, "error": self.error}
        return obj
