"""Tests for the kubernetes-backed cluster client."""

import asyncio
import time
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client.rest import ApiException
from kubernetes.config import ConfigException
from kubernetes.dynamic.exceptions import ResourceNotFoundError
from urllib3.exceptions import MaxRetryError, ReadTimeoutError

from conftest import config_map
from fleet_reconciler.cluster import ClusterClient, ClusterSecretLookup, request_deadline
from fleet_reconciler.config import ApplierSettings
from fleet_reconciler.errors import (
    AlreadyExistsError,
    ApiError,
    ConflictError,
    DeadlineExceededError,
    NotFoundError,
    ReconcileError,
    UnsupportedKindError,
)
from fleet_reconciler.models import SECRET_GVK, ClusterRole, GroupVersionKind, PropagationPolicy
from fleet_reconciler.services import Applier

SECRET = {
    "apiVersion": "v1",
    "kind": "Secret",
    "metadata": {"name": "token", "namespace": "default"},
    "type": "Opaque",
}


@pytest.fixture
def dynamic_client():
    return MagicMock()


@pytest.fixture
def resource(dynamic_client):
    return dynamic_client.resources.get.return_value


@pytest.fixture
def client(dynamic_client, management_types):
    return ClusterClient(dynamic_client, management_types)


class TestClusterClient:
    """Test API calls and error translation."""

    async def test_get(self, client, dynamic_client, resource):
        """Test get resolves the resource and returns a plain dict."""
        resource.get.return_value.to_dict.return_value = SECRET

        result = await client.get(SECRET_GVK, "default", "token")

        assert result == SECRET
        dynamic_client.resources.get.assert_called_with(api_version="v1", kind="Secret")
        resource.get.assert_called_once_with(name="token", namespace="default")

    async def test_get_cluster_scoped(self, client, resource):
        """Test cluster-scoped objects are read without a namespace."""
        namespace_gvk = GroupVersionKind("", "v1", "Namespace")

        await client.get(namespace_gvk, "", "garden")

        resource.get.assert_called_once_with(name="garden", namespace=None)

    async def test_get_not_found(self, client, resource):
        """Test a 404 becomes NotFoundError."""
        resource.get.side_effect = ApiException(status=404, reason="Not Found")

        with pytest.raises(NotFoundError) as exc_info:
            await client.get(SECRET_GVK, "default", "token")

        assert exc_info.value.key.name == "token"

    async def test_unserved_kind(self, client, dynamic_client):
        """Test a kind the server does not know becomes UnsupportedKindError."""
        dynamic_client.resources.get.side_effect = ResourceNotFoundError("No matches found")

        with pytest.raises(UnsupportedKindError):
            await client.get(GroupVersionKind("example.com", "v1", "Widget"), "default", "w")

    async def test_list_with_selector(self, client, resource):
        """Test label selectors are rendered and items returned."""
        resource.get.return_value.to_dict.return_value = {"items": [SECRET]}

        items = await client.list(SECRET_GVK, "default", {"b": "2", "a": "1"})

        assert items == [SECRET]
        resource.get.assert_called_once_with(namespace="default", label_selector="a=1,b=2")

    async def test_create(self, client, resource):
        """Test create posts the body to the object's namespace."""
        resource.create.return_value.to_dict.return_value = SECRET

        await client.create(SECRET)

        resource.create.assert_called_once_with(body=SECRET, namespace="default")

    async def test_create_conflict(self, client, resource):
        """Test a 409 on create becomes AlreadyExistsError."""
        resource.create.side_effect = ApiException(status=409, reason="Conflict")

        with pytest.raises(AlreadyExistsError):
            await client.create(SECRET)

    async def test_update_conflict(self, client, resource):
        """Test a 409 on update becomes ConflictError."""
        resource.replace.side_effect = ApiException(status=409, reason="Conflict")

        with pytest.raises(ConflictError) as exc_info:
            await client.update(SECRET)

        assert not isinstance(exc_info.value, AlreadyExistsError)
        resource.replace.assert_called_once_with(body=SECRET, name="token", namespace="default")

    async def test_other_status(self, client, resource):
        """Test other statuses become ApiError carrying the status."""
        resource.create.side_effect = ApiException(status=500, reason="Internal Server Error")

        with pytest.raises(ApiError) as exc_info:
            await client.create(SECRET)

        assert exc_info.value.status == 500

    async def test_delete_options(self, client, resource):
        """Test delete sends propagation policy and grace period."""
        await client.delete(SECRET_GVK, "default", "token", PropagationPolicy.BACKGROUND, 0)

        resource.delete.assert_called_once_with(
            name="token",
            namespace="default",
            body={
                "apiVersion": "v1",
                "kind": "DeleteOptions",
                "propagationPolicy": "Background",
                "gracePeriodSeconds": 0,
            },
        )

    def test_role(self, client):
        """Test the client is bound to its role."""
        assert client.role == ClusterRole.MANAGEMENT


    async def test_transport_error(self, client, resource):
        """Test connection failures become ApiError carrying the object identity."""
        resource.get.side_effect = MaxRetryError(None, "/api/v1/namespaces/default/secrets/token")

        with pytest.raises(ApiError) as exc_info:
            await client.get(SECRET_GVK, "default", "token")

        assert isinstance(exc_info.value, ReconcileError)
        assert exc_info.value.status is None
        assert exc_info.value.key.name == "token"
        assert exc_info.value.key.gvk == SECRET_GVK

    async def test_socket_error(self, client, resource):
        """Test OS level socket errors become ApiError."""
        resource.create.side_effect = ConnectionRefusedError(111, "Connection refused")

        with pytest.raises(ApiError) as exc_info:
            await client.create(SECRET)

        assert exc_info.value.key.namespace == "default"

class TestFromConfig:
    """Test client construction."""

    def test_in_cluster(self, management_types):
        """Test in-cluster configuration is preferred."""
        with (
            patch("fleet_reconciler.cluster.client.config.load_incluster_config") as load,
            patch("fleet_reconciler.cluster.client.config.new_client_from_config") as from_file,
            patch("fleet_reconciler.cluster.client.dynamic.DynamicClient") as dynamic,
        ):
            client = ClusterClient.from_config(management_types)

        load.assert_called_once()
        from_file.assert_not_called()
        dynamic.assert_called_once()
        assert client.type_set == management_types

    def test_falls_back_to_kubeconfig(self, management_types):
        """Test the kubeconfig file is used outside a cluster."""
        with (
            patch(
                "fleet_reconciler.cluster.client.config.load_incluster_config",
                side_effect=ConfigException("not in cluster"),
            ),
            patch("fleet_reconciler.cluster.client.config.new_client_from_config") as from_file,
            patch("fleet_reconciler.cluster.client.dynamic.DynamicClient") as dynamic,
        ):
            ClusterClient.from_config(management_types, context="garden")

        from_file.assert_called_once_with(context="garden")
        dynamic.assert_called_once_with(from_file.return_value)


class TestClusterSecretLookup:
    """Test the secrets manager adapter."""

    async def test_returns_secret(self, client, resource):
        """Test an existing secret is returned."""
        resource.get.return_value.to_dict.return_value = SECRET

        secret = await ClusterSecretLookup(client, "default").get("token")

        assert secret == SECRET

    async def test_missing_secret(self, client, resource):
        """Test a missing secret is None."""
        resource.get.side_effect = ApiException(status=404, reason="Not Found")

        assert await ClusterSecretLookup(client, "default").get("ca") is None


class TestRequestDeadline:
    """Test deadlines reach the worker thread running the request."""

    @pytest.fixture
    def landed(self):
        return []

    @pytest.fixture
    def slow_create(self, resource, landed):
        """Create that takes 0.3s and gives up early when its HTTP timeout is shorter."""

        def create(body, namespace=None, _request_timeout=None):
            if _request_timeout is not None and _request_timeout < 0.3:
                time.sleep(_request_timeout)
                raise ReadTimeoutError(None, "/api/v1/configmaps", "Read timed out.")
            time.sleep(0.3)
            landed.append(body["metadata"]["name"])
            return MagicMock()

        resource.get.side_effect = ApiException(status=404, reason="Not Found")
        resource.create.side_effect = create
        return create

    async def test_no_request_timeout_without_deadline(self, client, resource):
        """Test requests are sent without a timeout when no deadline is set."""
        await client.get(SECRET_GVK, "default", "token")

        assert "_request_timeout" not in resource.get.call_args.kwargs

    async def test_request_timeout_is_time_left(self, client, resource):
        """Test the request timeout is the time left before the deadline."""
        with request_deadline(5):
            await client.get(SECRET_GVK, "default", "token")

        assert 0 < resource.get.call_args.kwargs["_request_timeout"] <= 5

    async def test_nested_deadline_never_extends(self, client, resource):
        """Test an inner deadline cannot outlast the outer one."""
        with request_deadline(0.5):
            with request_deadline(10):
                await client.get(SECRET_GVK, "default", "token")

        assert resource.get.call_args.kwargs["_request_timeout"] <= 0.5

    async def test_passed_deadline_sends_nothing(self, client, resource):
        """Test no request is sent once the deadline has passed."""
        with request_deadline(0):
            with pytest.raises(DeadlineExceededError):
                await client.create(SECRET)

        resource.create.assert_not_called()

    async def test_no_write_after_deadline(
        self, client, resource, management_types, slow_create, landed
    ):
        """Test a create cut off by the deadline never lands afterwards."""
        applier = Applier(client, management_types, ApplierSettings(timeout_seconds=0.05))

        with pytest.raises(DeadlineExceededError):
            await applier.apply(config_map("settings"))
        await asyncio.sleep(0.4)

        assert landed == []
        assert resource.create.call_args.kwargs["_request_timeout"] <= 0.05

    async def test_deadline_error_after_worker_stopped(
        self, client, resource, management_types, landed
    ):
        """Test the deadline error is raised only once the worker has stopped."""

        def create(body, namespace=None, _request_timeout=None):
            time.sleep(0.2)
            landed.append(body["metadata"]["name"])
            return MagicMock()

        resource.get.side_effect = ApiException(status=404, reason="Not Found")
        resource.create.side_effect = create
        applier = Applier(client, management_types, ApplierSettings(timeout_seconds=0.05))

        with pytest.raises(DeadlineExceededError):
            await applier.apply(config_map("settings"))

        assert landed == ["settings"]

    async def test_cancellation_waits_for_worker(
        self, client, management_types, slow_create, landed
    ):
        """Test a cancelled apply returns only once its request has finished."""
        applier = Applier(client, management_types, ApplierSettings())
        task = asyncio.create_task(applier.apply(config_map("settings")))
        await asyncio.sleep(0.05)

        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert landed == ["settings"]
