"""
Cluster API client - access to requests, claims, volumes and events.

Defines the async ClusterClient interface the reconciler depends on and an
implementation on top of the official kubernetes client, whose blocking
calls run in worker threads.
"""

import asyncio
import json
import logging
import random
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import urllib3
from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException

from config import KubernetesConfig
from resources import API_GROUP, API_VERSION, PLURAL, UnregisterRequest

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ApiError(Exception):
    """Raised when the cluster API returns an error response."""

    def __init__(self, status: int, message: str):
        self.status = status
        self.message = message
        super().__init__(f"HTTP {status}: {message}")


class NotFoundError(ApiError):
    """The addressed object does not exist."""

    def __init__(self, message: str = "not found"):
        super().__init__(404, message)


class ConflictError(ApiError):
    """A conditional write lost against a concurrent modification."""

    def __init__(self, message: str = "conflict"):
        super().__init__(409, message)


def api_error_from(e: ApiException) -> ApiError:
    """Translate a kubernetes ApiException into the matching ApiError."""
    message = _status_message(e.body) if e.body else (e.reason or "")
    if e.status == 404:
        return NotFoundError(message)
    if e.status == 409:
        return ConflictError(message)
    return ApiError(e.status or 0, message)


async def retry_on_conflict(
    fn: Callable[[], Awaitable[T]],
    steps: int = 5,
    duration: float = 0.01,
    factor: float = 1.0,
    jitter: float = 0.1,
) -> T:
    """
    Run fn, retrying it while it raises ConflictError.

    Matches the API machinery's default conflict retry: at most `steps`
    attempts, `duration` seconds apart, scaled by `factor` and randomized by
    `jitter`. The last ConflictError is re-raised when attempts run out.
    Any other error propagates immediately.
    """
    delay = duration
    for attempt in range(1, steps + 1):
        try:
            return await fn()
        except ConflictError:
            if attempt == steps:
                raise
            logger.debug(f"Conflict on attempt {attempt}/{steps}, retrying")
            await asyncio.sleep(delay + delay * jitter * random.random())
            delay *= factor
    raise RuntimeError("retry_on_conflict requires at least one step")


class ClusterClient(ABC):
    """Operations the reconciler needs from the cluster API."""

    @abstractmethod
    async def get_unregister_request(
        self, namespace: str, name: str
    ) -> UnregisterRequest:
        pass

    @abstractmethod
    async def list_unregister_requests(self) -> List[UnregisterRequest]:
        pass

    @abstractmethod
    async def update_unregister_request(
        self, request: UnregisterRequest
    ) -> UnregisterRequest:
        """Write the request, conditional on its resource_version."""
        pass

    @abstractmethod
    async def get_persistent_volume_claim(
        self, namespace: str, name: str
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def get_persistent_volume(self, name: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def list_persistent_volumes(self) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def update_persistent_volume(self, pv: Dict[str, Any]) -> Dict[str, Any]:
        """Write the volume, conditional on metadata.resourceVersion."""
        pass

    @abstractmethod
    async def delete_persistent_volume_claim(self, namespace: str, name: str) -> None:
        pass

    @abstractmethod
    async def delete_persistent_volume(self, name: str) -> None:
        pass

    @abstractmethod
    async def create_event(self, namespace: str, event: Dict[str, Any]) -> None:
        pass

    async def close(self) -> None:
        """Release any held connections."""
        pass


class KubeApiClient(ClusterClient):
    """ClusterClient backed by the kubernetes CoreV1Api and CustomObjectsApi."""

    def __init__(self, api_client: client.ApiClient, request_timeout: float = 30.0):
        self.api_client = api_client
        self.core = client.CoreV1Api(api_client)
        self.custom = client.CustomObjectsApi(api_client)
        self._timeout = request_timeout

    @classmethod
    def from_config(cls, cfg: KubernetesConfig) -> "KubeApiClient":
        """
        Build a client from a kubeconfig file or in-cluster credentials.

        An explicit kubeconfig wins. Otherwise the service account of the
        pod is used, falling back to the default kubeconfig location.

        Raises:
            ConfigException: If no usable credentials are found.
        """
        configuration = client.Configuration()
        if cfg.kubeconfig:
            config.load_kube_config(
                config_file=cfg.kubeconfig,
                context=cfg.context,
                client_configuration=configuration,
            )
        else:
            try:
                config.load_incluster_config(client_configuration=configuration)
            except ConfigException:
                config.load_kube_config(
                    context=cfg.context, client_configuration=configuration
                )

        if cfg.api_server:
            configuration.host = cfg.api_server
        if cfg.insecure:
            configuration.verify_ssl = False

        logger.info(f"Using Kubernetes API server {configuration.host}")
        return cls(client.ApiClient(configuration), request_timeout=cfg.request_timeout)

    async def _call(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Run a blocking API call in a worker thread and map its errors."""
        kwargs.setdefault("_request_timeout", self._timeout)
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ApiException as e:
            raise api_error_from(e) from e
        except urllib3.exceptions.HTTPError as e:
            raise ApiError(0, f"Unable to reach the API server: {e}") from e

    def _to_dict(self, obj: Any) -> Dict[str, Any]:
        return self.api_client.sanitize_for_serialization(obj)

    async def get_unregister_request(
        self, namespace: str, name: str
    ) -> UnregisterRequest:
        obj = await self._call(
            self.custom.get_namespaced_custom_object,
            API_GROUP,
            API_VERSION,
            namespace,
            PLURAL,
            name,
        )
        return UnregisterRequest.from_dict(obj)

    async def list_unregister_requests(self) -> List[UnregisterRequest]:
        result = await self._call(
            self.custom.list_cluster_custom_object, API_GROUP, API_VERSION, PLURAL
        )
        return [UnregisterRequest.from_dict(item) for item in result.get("items", [])]

    async def update_unregister_request(
        self, request: UnregisterRequest
    ) -> UnregisterRequest:
        obj = await self._call(
            self.custom.replace_namespaced_custom_object,
            API_GROUP,
            API_VERSION,
            request.namespace,
            PLURAL,
            request.name,
            request.to_dict(),
        )
        return UnregisterRequest.from_dict(obj)

    async def get_persistent_volume_claim(
        self, namespace: str, name: str
    ) -> Dict[str, Any]:
        pvc = await self._call(
            self.core.read_namespaced_persistent_volume_claim, name, namespace
        )
        return self._to_dict(pvc)

    async def get_persistent_volume(self, name: str) -> Dict[str, Any]:
        pv = await self._call(self.core.read_persistent_volume, name)
        return self._to_dict(pv)

    async def list_persistent_volumes(self) -> List[Dict[str, Any]]:
        result = await self._call(self.core.list_persistent_volume)
        return [self._to_dict(pv) for pv in result.items]

    async def update_persistent_volume(self, pv: Dict[str, Any]) -> Dict[str, Any]:
        updated = await self._call(
            self.core.replace_persistent_volume, pv["metadata"]["name"], pv
        )
        return self._to_dict(updated)

    async def delete_persistent_volume_claim(self, namespace: str, name: str) -> None:
        await self._call(
            self.core.delete_namespaced_persistent_volume_claim,
            name,
            namespace,
            grace_period_seconds=0,
        )

    async def delete_persistent_volume(self, name: str) -> None:
        await self._call(
            self.core.delete_persistent_volume, name, grace_period_seconds=0
        )

    async def create_event(self, namespace: str, event: Dict[str, Any]) -> None:
        await self._call(self.core.create_namespaced_event, namespace, event)

    async def close(self) -> None:
        await asyncio.to_thread(self.api_client.close)


def _status_message(body: Any) -> str:
    """Extract the message from a metav1.Status body, if there is one."""
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    try:
        status = json.loads(body)
    except ValueError:
        return body
    if isinstance(status, dict):
        return status.get("message") or body
    return body
