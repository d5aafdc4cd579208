"""Pytest configuration and fixtures."""

import asyncio
import copy
from typing import Any, Dict, List, Optional, Tuple

import pytest

from backoff import BackoffTracker
from events import EventRecorder
from kube import ClusterClient, ConflictError, NotFoundError
from reconcilers.base import ReconcilerContext
from resources import ResourceKey, UnregisterRequest


class FakeCluster(ClusterClient):
    """
    In-memory cluster API with optimistic concurrency.

    Every call is appended to `calls`. Exceptions queued in `faults[op]`
    are raised, one per call, before the operation runs.
    """

    def __init__(self):
        self.requests: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.pvcs: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.pvs: Dict[str, Dict[str, Any]] = {}
        self.events: List[Dict[str, Any]] = []
        self.calls: List[Tuple] = []
        self.faults: Dict[str, List[Exception]] = {}
        # (object deleted, reclaim policy of the volume at that moment)
        self.delete_observations: List[Tuple[str, Optional[str]]] = []
        self._version = 0

    # ---- setup helpers ----

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def add_request(
        self,
        namespace: str,
        name: str,
        pvc_name: str = "",
        unregistered: bool = False,
        error: str = "",
    ) -> ResourceKey:
        self.requests[(namespace, name)] = {
            "apiVersion": "cns.vmware.com/v1alpha1",
            "kind": "CnsUnregisterVolume",
            "metadata": {
                "namespace": namespace,
                "name": name,
                "uid": f"uid-{name}",
                "resourceVersion": self._next_version(),
            },
            "spec": {"pvcName": pvc_name},
            "status": {"unregistered": unregistered, "error": error},
        }
        return ResourceKey(namespace, name)

    def add_bound_claim(
        self,
        namespace: str,
        pvc_name: str,
        pv_name: str,
        reclaim_policy: str = "Delete",
        volume_handle: str = "",
    ) -> None:
        self.pvcs[(namespace, pvc_name)] = {
            "metadata": {
                "namespace": namespace,
                "name": pvc_name,
                "resourceVersion": self._next_version(),
            },
            "spec": {"volumeName": pv_name},
            "status": {"phase": "Bound"},
        }
        self.pvs[pv_name] = {
            "metadata": {"name": pv_name, "resourceVersion": self._next_version()},
            "spec": {
                "persistentVolumeReclaimPolicy": reclaim_policy,
                "claimRef": {"namespace": namespace, "name": pvc_name},
                "csi": {
                    "driver": "csi.vsphere.vmware.com",
                    "volumeHandle": volume_handle or f"handle-{pv_name}",
                },
            },
            "status": {"phase": "Bound"},
        }

    def request(self, key: ResourceKey) -> Dict[str, Any]:
        return self.requests[(key.namespace, key.name)]

    def calls_to(self, op: str) -> List[Tuple]:
        return [c for c in self.calls if c[0] == op]

    def _enter(self, op: str, *args) -> None:
        self.calls.append((op,) + args)
        queued = self.faults.get(op)
        if queued:
            raise queued.pop(0)

    def _policy_for_claim(self, namespace: str, name: str) -> Optional[str]:
        for pv in self.pvs.values():
            ref = pv["spec"].get("claimRef") or {}
            if ref.get("namespace") == namespace and ref.get("name") == name:
                return pv["spec"].get("persistentVolumeReclaimPolicy")
        return None

    # ---- ClusterClient ----

    async def get_unregister_request(self, namespace, name):
        self._enter("get_unregister_request", namespace, name)
        obj = self.requests.get((namespace, name))
        if obj is None:
            raise NotFoundError(f"cnsunregistervolumes {name!r} not found")
        return UnregisterRequest.from_dict(copy.deepcopy(obj))

    async def list_unregister_requests(self):
        self._enter("list_unregister_requests")
        return [
            UnregisterRequest.from_dict(copy.deepcopy(o))
            for o in self.requests.values()
        ]

    async def update_unregister_request(self, request):
        self._enter("update_unregister_request", request.namespace, request.name)
        current = self.requests.get((request.namespace, request.name))
        if current is None:
            raise NotFoundError(f"cnsunregistervolumes {request.name!r} not found")
        if current["metadata"]["resourceVersion"] != request.resource_version:
            raise ConflictError("the object has been modified")
        obj = request.to_dict()
        obj["metadata"]["resourceVersion"] = self._next_version()
        self.requests[(request.namespace, request.name)] = obj
        return UnregisterRequest.from_dict(copy.deepcopy(obj))

    async def get_persistent_volume_claim(self, namespace, name):
        self._enter("get_persistent_volume_claim", namespace, name)
        obj = self.pvcs.get((namespace, name))
        if obj is None:
            raise NotFoundError(f"persistentvolumeclaims {name!r} not found")
        return copy.deepcopy(obj)

    async def get_persistent_volume(self, name):
        self._enter("get_persistent_volume", name)
        obj = self.pvs.get(name)
        if obj is None:
            raise NotFoundError(f"persistentvolumes {name!r} not found")
        return copy.deepcopy(obj)

    async def list_persistent_volumes(self):
        self._enter("list_persistent_volumes")
        return [copy.deepcopy(pv) for pv in self.pvs.values()]

    async def update_persistent_volume(self, pv):
        name = pv["metadata"]["name"]
        policy = pv["spec"].get("persistentVolumeReclaimPolicy")
        self._enter("update_persistent_volume", name, policy)
        current = self.pvs.get(name)
        if current is None:
            raise NotFoundError(f"persistentvolumes {name!r} not found")
        version = pv["metadata"].get("resourceVersion")
        if current["metadata"]["resourceVersion"] != version:
            raise ConflictError("the object has been modified")
        stored = copy.deepcopy(pv)
        stored["metadata"]["resourceVersion"] = self._next_version()
        self.pvs[name] = stored
        return copy.deepcopy(stored)

    async def delete_persistent_volume_claim(self, namespace, name):
        self._enter("delete_persistent_volume_claim", namespace, name)
        self.delete_observations.append(
            (f"pvc/{name}", self._policy_for_claim(namespace, name))
        )
        if self.pvcs.pop((namespace, name), None) is None:
            raise NotFoundError(f"persistentvolumeclaims {name!r} not found")

    async def delete_persistent_volume(self, name):
        self._enter("delete_persistent_volume", name)
        pv = self.pvs.get(name)
        policy = pv["spec"].get("persistentVolumeReclaimPolicy") if pv else None
        self.delete_observations.append((f"pv/{name}", policy))
        if self.pvs.pop(name, None) is None:
            raise NotFoundError(f"persistentvolumes {name!r} not found")

    async def create_event(self, namespace, event):
        self._enter("create_event", namespace)
        self.events.append(event)


async def wait_for(predicate, timeout: float = 2.0, interval: float = 0.005):
    """Poll predicate until it is true or fail after timeout seconds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def fake_cluster():
    """Create an empty in-memory cluster."""
    return FakeCluster()


@pytest.fixture
def backoff():
    return BackoffTracker(base_delay=1.0)


@pytest.fixture
def ctx(fake_cluster, backoff):
    """Reconciler context wired to the fake cluster."""
    return ReconcilerContext(
        client=fake_cluster,
        recorder=EventRecorder(fake_cluster),
        backoff=backoff,
        shutdown_event=asyncio.Event(),
        conflict_retry_steps=5,
    )


@pytest.fixture
def sample_request():
    """Sample CnsUnregisterVolume object for testing."""
    return {
        "apiVersion": "cns.vmware.com/v1alpha1",
        "kind": "CnsUnregisterVolume",
        "metadata": {
            "namespace": "team-a",
            "name": "vol1",
            "uid": "1234-abcd",
            "resourceVersion": "42",
            "labels": {"app": "db"},
        },
        "spec": {"pvcName": "pvc1"},
        "status": {"unregistered": False, "error": ""},
    }
