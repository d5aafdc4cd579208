"""
Event Recording - Kubernetes events for CnsUnregisterVolume requests.

Every outcome of a reconciliation is surfaced on the request as a core/v1
Event, similar to the record.EventRecorder used by Kubernetes controllers.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from resources import API_GROUP, API_VERSION, KIND, UnregisterRequest

logger = logging.getLogger(__name__)

EVENT_SOURCE_COMPONENT = API_GROUP

REASON_SUCCEEDED = "CnsUnregisterVolumeSucceeded"
REASON_FAILED = "CnsUnregisterVolumeFailed"


class EventType(Enum):
    """Kubernetes event severities."""

    NORMAL = "Normal"
    WARNING = "Warning"


@dataclass
class ResourceEvent:
    """An event about one request."""

    event_type: EventType
    reason: str
    message: str
    namespace: str
    name: str
    uid: str
    resource_version: str
    timestamp: str

    @classmethod
    def from_request(
        cls,
        request: UnregisterRequest,
        event_type: EventType,
        reason: str,
        message: str,
    ) -> "ResourceEvent":
        metadata = request.raw.get("metadata") or {}
        return cls(
            event_type=event_type,
            reason=reason,
            message=message,
            namespace=request.namespace,
            name=request.name,
            uid=metadata.get("uid", ""),
            resource_version=request.resource_version or "",
            timestamp=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        )

    def to_k8s(self) -> Dict[str, Any]:
        """
        Format the event as a core/v1 Event object.

        Returns:
            A dict ready to POST to the namespace's events endpoint.
        """
        return {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "name": f"{self.name}.{uuid.uuid4().hex[:16]}",
                "namespace": self.namespace,
            },
            "involvedObject": {
                "apiVersion": f"{API_GROUP}/{API_VERSION}",
                "kind": KIND,
                "namespace": self.namespace,
                "name": self.name,
                "uid": self.uid,
                "resourceVersion": self.resource_version,
            },
            "type": self.event_type.value,
            "reason": self.reason,
            "message": self.message,
            "source": {"component": EVENT_SOURCE_COMPONENT},
            "firstTimestamp": self.timestamp,
            "lastTimestamp": self.timestamp,
            "count": 1,
        }


class EventRecorder:
    """
    Posts request events to the cluster.

    Recording is best-effort: a failed post is logged and dropped so that
    event delivery never changes a reconciliation outcome.
    """

    def __init__(self, client: Any):
        self._client = client

    async def record(
        self,
        request: UnregisterRequest,
        event_type: EventType,
        reason: str,
        message: str,
    ) -> ResourceEvent:
        event = ResourceEvent.from_request(request, event_type, reason, message)
        logger.debug(
            f"Event {event_type.value}/{reason} on {request.key}: {message}"
        )
        try:
            await self._client.create_event(request.namespace, event.to_k8s())
        except Exception as e:
            logger.warning(f"Failed to record event {reason} on {request.key}: {e}")
        return event

    async def success(self, request: UnregisterRequest, message: str) -> ResourceEvent:
        return await self.record(request, EventType.NORMAL, REASON_SUCCEEDED, message)

    async def failure(self, request: UnregisterRequest, message: str) -> ResourceEvent:
        return await self.record(request, EventType.WARNING, REASON_FAILED, message)
