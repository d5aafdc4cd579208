"""Unit tests for kube.py - cluster API client."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import urllib3
import yaml
from kubernetes import client
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException

from config import KubernetesConfig
from kube import (
    ApiError,
    ConflictError,
    KubeApiClient,
    NotFoundError,
    api_error_from,
    retry_on_conflict,
)
from resources import UnregisterRequest


def api_exception(status, body=None, reason=""):
    e = ApiException(status=status, reason=reason)
    e.body = body
    return e


class TestApiErrorFrom:
    def test_not_found(self):
        error = api_error_from(api_exception(404, reason="Not Found"))
        assert isinstance(error, NotFoundError)
        assert error.status == 404
        assert error.message == "Not Found"

    def test_conflict_uses_status_message(self):
        body = json.dumps(
            {
                "kind": "Status",
                "message": 'Operation cannot be fulfilled on persistentvolumes "pv-1"',
                "code": 409,
            }
        )
        error = api_error_from(api_exception(409, body=body))
        assert isinstance(error, ConflictError)
        assert error.message.startswith("Operation cannot be fulfilled")

    def test_other_errors(self):
        error = api_error_from(api_exception(500, body="etcd timeout"))
        assert not isinstance(error, (NotFoundError, ConflictError))
        assert str(error) == "HTTP 500: etcd timeout"

    def test_bytes_body(self):
        error = api_error_from(api_exception(403, body=b'{"message": "forbidden"}'))
        assert error.message == "forbidden"


@pytest.mark.asyncio
class TestRetryOnConflict:
    async def test_returns_first_success(self):
        fn = AsyncMock(return_value="ok")
        assert await retry_on_conflict(fn) == "ok"
        assert fn.await_count == 1

    async def test_retries_conflicts(self):
        fn = AsyncMock(side_effect=[ConflictError(), ConflictError(), "ok"])
        assert await retry_on_conflict(fn, duration=0) == "ok"
        assert fn.await_count == 3

    async def test_gives_up_after_steps(self):
        fn = AsyncMock(side_effect=ConflictError("still modified"))
        with pytest.raises(ConflictError, match="still modified"):
            await retry_on_conflict(fn, steps=5, duration=0)
        assert fn.await_count == 5

    async def test_other_errors_propagate_immediately(self):
        fn = AsyncMock(side_effect=ApiError(500, "boom"))
        with pytest.raises(ApiError):
            await retry_on_conflict(fn)
        assert fn.await_count == 1


class TestFromConfig:
    def _write_kubeconfig(self, tmp_path, user, cluster_extra=None):
        cluster = {"server": "https://lab.example.com:6443"}
        cluster.update(cluster_extra or {})
        kubeconfig = {
            "apiVersion": "v1",
            "kind": "Config",
            "current-context": "lab",
            "contexts": [
                {"name": "lab", "context": {"cluster": "lab", "user": "admin"}},
                {"name": "other", "context": {"cluster": "lab", "user": "viewer"}},
            ],
            "clusters": [{"name": "lab", "cluster": cluster}],
            "users": [
                {"name": "admin", "user": user},
                {"name": "viewer", "user": {"token": "viewer-token"}},
            ],
        }
        path = tmp_path / "config"
        path.write_text(yaml.safe_dump(kubeconfig))
        return str(path)

    def test_kubeconfig_token(self, tmp_path):
        path = self._write_kubeconfig(
            tmp_path,
            {"token": "admin-token"},
            {"insecure-skip-tls-verify": True},
        )
        kube = KubeApiClient.from_config(KubernetesConfig(kubeconfig=path))
        configuration = kube.api_client.configuration
        assert configuration.host == "https://lab.example.com:6443"
        assert configuration.api_key["authorization"] == "Bearer admin-token"
        assert configuration.verify_ssl is False

    def test_kubeconfig_context_override(self, tmp_path):
        path = self._write_kubeconfig(tmp_path, {"token": "admin-token"})
        kube = KubeApiClient.from_config(
            KubernetesConfig(kubeconfig=path, context="other")
        )
        configuration = kube.api_client.configuration
        assert configuration.api_key["authorization"] == "Bearer viewer-token"
        assert configuration.verify_ssl is True

    def test_overrides(self, tmp_path):
        path = self._write_kubeconfig(tmp_path, {"token": "admin-token"})
        kube = KubeApiClient.from_config(
            KubernetesConfig(
                kubeconfig=path,
                api_server="https://proxy.example.com",
                insecure=True,
                request_timeout=5,
            )
        )
        assert kube.api_client.configuration.host == "https://proxy.example.com"
        assert kube.api_client.configuration.verify_ssl is False
        assert kube._timeout == 5

    def test_unknown_context(self, tmp_path):
        path = self._write_kubeconfig(tmp_path, {"token": "t"})
        with pytest.raises(ConfigException):
            KubeApiClient.from_config(
                KubernetesConfig(kubeconfig=path, context="nope")
            )

    def test_in_cluster_preferred_without_kubeconfig(self):
        with patch("kube.config.load_incluster_config") as incluster, patch(
            "kube.config.load_kube_config"
        ) as kubeconfig:
            KubeApiClient.from_config(KubernetesConfig())

        incluster.assert_called_once()
        kubeconfig.assert_not_called()

    def test_falls_back_to_default_kubeconfig(self):
        with patch(
            "kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ), patch("kube.config.load_kube_config") as kubeconfig:
            KubeApiClient.from_config(KubernetesConfig(context="lab"))

        assert kubeconfig.call_args.kwargs["context"] == "lab"


@pytest.mark.asyncio
class TestKubeApiClientCalls:
    """Maps each operation onto the typed API and translates errors."""

    @pytest.fixture
    def kube(self):
        kube = KubeApiClient(client.ApiClient(client.Configuration()))
        kube.core = MagicMock()
        kube.custom = MagicMock()
        return kube

    async def test_get_unregister_request(self, kube, sample_request):
        kube.custom.get_namespaced_custom_object.return_value = sample_request
        request = await kube.get_unregister_request("team-a", "vol1")

        kube.custom.get_namespaced_custom_object.assert_called_once_with(
            "cns.vmware.com",
            "v1alpha1",
            "team-a",
            "cnsunregistervolumes",
            "vol1",
            _request_timeout=30.0,
        )
        assert request.pvc_name == "pvc1"

    async def test_list_unregister_requests(self, kube, sample_request):
        kube.custom.list_cluster_custom_object.return_value = {
            "items": [sample_request]
        }
        requests = await kube.list_unregister_requests()
        assert [r.name for r in requests] == ["vol1"]

    async def test_update_unregister_request(self, kube, sample_request):
        request = UnregisterRequest.from_dict(sample_request)
        request.unregistered = True
        kube.custom.replace_namespaced_custom_object.return_value = request.to_dict()

        await kube.update_unregister_request(request)

        args = kube.custom.replace_namespaced_custom_object.call_args.args
        assert args[:5] == (
            "cns.vmware.com",
            "v1alpha1",
            "team-a",
            "cnsunregistervolumes",
            "vol1",
        )
        assert args[5]["metadata"]["resourceVersion"] == "42"
        assert args[5]["status"]["unregistered"] is True

    async def test_volume_models_become_dicts(self, kube):
        kube.core.read_persistent_volume.return_value = client.V1PersistentVolume(
            metadata=client.V1ObjectMeta(name="pv-1", resource_version="7"),
            spec=client.V1PersistentVolumeSpec(
                persistent_volume_reclaim_policy="Delete",
                claim_ref=client.V1ObjectReference(namespace="team-a", name="pvc1"),
            ),
        )

        pv = await kube.get_persistent_volume("pv-1")

        assert pv["metadata"] == {"name": "pv-1", "resourceVersion": "7"}
        assert pv["spec"]["persistentVolumeReclaimPolicy"] == "Delete"
        assert pv["spec"]["claimRef"] == {"namespace": "team-a", "name": "pvc1"}

    async def test_list_persistent_volumes(self, kube):
        kube.core.list_persistent_volume.return_value = client.V1PersistentVolumeList(
            items=[client.V1PersistentVolume(metadata=client.V1ObjectMeta(name="a"))]
        )
        assert await kube.list_persistent_volumes() == [{"metadata": {"name": "a"}}]

    async def test_claim_lookup(self, kube):
        kube.core.read_namespaced_persistent_volume_claim.return_value = (
            client.V1PersistentVolumeClaim(
                spec=client.V1PersistentVolumeClaimSpec(volume_name="pv-1")
            )
        )
        pvc = await kube.get_persistent_volume_claim("team-a", "pvc1")

        kube.core.read_namespaced_persistent_volume_claim.assert_called_once_with(
            "pvc1", "team-a", _request_timeout=30.0
        )
        assert pvc["spec"]["volumeName"] == "pv-1"

    async def test_update_persistent_volume(self, kube):
        pv = {"metadata": {"name": "pv-1", "resourceVersion": "7"}, "spec": {}}
        kube.core.replace_persistent_volume.return_value = client.V1PersistentVolume(
            metadata=client.V1ObjectMeta(name="pv-1", resource_version="8")
        )

        updated = await kube.update_persistent_volume(pv)

        assert kube.core.replace_persistent_volume.call_args.args == ("pv-1", pv)
        assert updated["metadata"]["resourceVersion"] == "8"

    async def test_deletes_are_immediate(self, kube):
        await kube.delete_persistent_volume_claim("team-a", "pvc1")
        await kube.delete_persistent_volume("pv-1")

        claim_call = kube.core.delete_namespaced_persistent_volume_claim.call_args
        volume_call = kube.core.delete_persistent_volume.call_args
        assert claim_call.args == ("pvc1", "team-a")
        assert claim_call.kwargs["grace_period_seconds"] == 0
        assert volume_call.args == ("pv-1",)
        assert volume_call.kwargs["grace_period_seconds"] == 0

    async def test_create_event(self, kube):
        await kube.create_event("team-a", {"kind": "Event"})
        kube.core.create_namespaced_event.assert_called_once_with(
            "team-a", {"kind": "Event"}, _request_timeout=30.0
        )

    async def test_not_found_is_translated(self, kube):
        kube.core.delete_persistent_volume.side_effect = api_exception(
            404, reason="Not Found"
        )
        with pytest.raises(NotFoundError):
            await kube.delete_persistent_volume("pv-1")

    async def test_conflict_is_translated(self, kube):
        kube.core.replace_persistent_volume.side_effect = api_exception(409)
        with pytest.raises(ConflictError):
            await kube.update_persistent_volume({"metadata": {"name": "pv-1"}})

    async def test_connection_error_is_translated(self, kube):
        kube.custom.list_cluster_custom_object.side_effect = (
            urllib3.exceptions.MaxRetryError(None, "/apis", "refused")
        )
        with pytest.raises(ApiError, match="Unable to reach the API server"):
            await kube.list_unregister_requests()

    async def test_close(self, kube):
        kube.api_client = MagicMock()
        await kube.close()
        kube.api_client.close.assert_called_once()
