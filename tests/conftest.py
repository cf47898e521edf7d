"""Pytest configuration and shared fixtures."""

import asyncio
import base64
import copy
import os
from collections import defaultdict
from typing import Any

import pytest

# Set test environment before importing settings
os.environ["ENV"] = "development"
os.environ["LOG_LEVEL"] = "DEBUG"
os.environ["LOG_FORMAT"] = "text"

from fleet_reconciler.cluster import TypeRegistry, TypeSet, build_type_registry  # noqa: E402
from fleet_reconciler.config import (  # noqa: E402
    AccessSettings,
    ApplierSettings,
    ManagedResourceSettings,
)
from fleet_reconciler.errors import AlreadyExistsError, ConflictError, NotFoundError  # noqa: E402
from fleet_reconciler.models import (  # noqa: E402
    SECRET_GVK,
    BundlePayload,
    ClusterRole,
    GroupVersionKind,
    ManifestObject,
    ObjectKey,
    PropagationPolicy,
)
from fleet_reconciler.services import (  # noqa: E402
    Applier,
    ManagedResourceHandoff,
    ManagedResourceRegistry,
    ScopedAccessIssuer,
)

CA_BUNDLE = b"-----BEGIN CERTIFICATE-----\nMIIBszCCAVmgAwIBAgIUfake\n-----END CERTIFICATE-----\n"


def key_of(obj: dict[str, Any]) -> ObjectKey:
    metadata = obj.get("metadata") or {}
    return ObjectKey(
        GroupVersionKind.from_api_version(obj["apiVersion"], obj["kind"]),
        metadata.get("namespace") or "",
        metadata["name"],
    )


class FakeCluster:
    """In-memory ObjectClient.

    Bumps resourceVersion on every write, enforces it on update, records
    every call and can inject conflicts, failures and latency.
    """

    def __init__(self) -> None:
        self.objects: dict[ObjectKey, dict[str, Any]] = {}
        self.calls: list[tuple[str, ObjectKey]] = []
        self.delete_options: list[dict[str, Any]] = []
        self.conflicts: dict[ObjectKey, int] = defaultdict(int)
        self.failures: dict[tuple[str, ObjectKey], list[Exception]] = defaultdict(list)
        self.delay = 0.0
        self._version = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    async def _enter(self, operation: str, key: ObjectKey) -> None:
        self.calls.append((operation, key))
        if self.delay:
            await asyncio.sleep(self.delay)
        pending = self.failures.get((operation, key))
        if pending:
            raise pending.pop(0)

    def fail(self, operation: str, key: ObjectKey, error: Exception) -> None:
        """Make the next call of operation on key raise error."""
        self.failures[(operation, key)].append(error)

    def seed(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Store an object as if another writer had created it."""
        stored = copy.deepcopy(obj)
        metadata = stored.setdefault("metadata", {})
        metadata["resourceVersion"] = self._next_version()
        metadata["uid"] = f"uid-{self._version}"
        metadata["creationTimestamp"] = "2024-01-01T00:00:00Z"
        self.objects[key_of(stored)] = stored
        return copy.deepcopy(stored)

    def stored(self, gvk: GroupVersionKind, namespace: str, name: str) -> dict[str, Any] | None:
        obj = self.objects.get(ObjectKey(gvk, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def writes(self) -> list[tuple[str, ObjectKey]]:
        return [call for call in self.calls if call[0] in ("create", "update", "delete")]

    async def get(self, gvk: GroupVersionKind, namespace: str, name: str) -> dict[str, Any]:
        key = ObjectKey(gvk, namespace, name)
        await self._enter("get", key)
        if key not in self.objects:
            raise NotFoundError("Object not found", key)
        return copy.deepcopy(self.objects[key])

    async def list(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        label_selector: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        await self._enter("list", ObjectKey(gvk, namespace, ""))
        selector = label_selector or {}
        items = []
        for key, obj in self.objects.items():
            if key.gvk != gvk or key.namespace != namespace:
                continue
            labels = (obj.get("metadata") or {}).get("labels") or {}
            if all(labels.get(k) == v for k, v in selector.items()):
                items.append(copy.deepcopy(obj))
        return items

    async def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        key = key_of(obj)
        await self._enter("create", key)
        if key in self.objects:
            raise AlreadyExistsError("Object already exists", key)
        return self.seed(obj)

    async def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        key = key_of(obj)
        await self._enter("update", key)
        if key not in self.objects:
            raise NotFoundError("Object not found", key)

        current = self.objects[key]
        if self.conflicts[key] > 0:
            # Another writer got in first
            self.conflicts[key] -= 1
            current["metadata"]["resourceVersion"] = self._next_version()
            raise ConflictError("Object was modified concurrently", key)
        if obj["metadata"].get("resourceVersion") != current["metadata"]["resourceVersion"]:
            raise ConflictError("Object was modified concurrently", key)

        stored = copy.deepcopy(obj)
        metadata = stored["metadata"]
        metadata["uid"] = current["metadata"]["uid"]
        metadata["creationTimestamp"] = current["metadata"]["creationTimestamp"]
        metadata["resourceVersion"] = self._next_version()
        self.objects[key] = stored
        return copy.deepcopy(stored)

    async def delete(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        name: str,
        propagation_policy: PropagationPolicy,
        grace_period_seconds: int,
    ) -> None:
        key = ObjectKey(gvk, namespace, name)
        await self._enter("delete", key)
        self.delete_options.append(
            {
                "key": key,
                "propagation_policy": PropagationPolicy(propagation_policy),
                "grace_period_seconds": grace_period_seconds,
            }
        )
        if key not in self.objects:
            raise NotFoundError("Object not found", key)
        del self.objects[key]


class FakeSecretsManager:
    """SecretLookup over a fixed set of secrets."""

    def __init__(self, secrets: dict[str, dict[str, Any]] | None = None) -> None:
        self.secrets = secrets or {}
        self.lookups: list[str] = []

    async def get(self, name: str) -> dict[str, Any] | None:
        self.lookups.append(name)
        secret = self.secrets.get(name)
        return copy.deepcopy(secret) if secret is not None else None


def payload_from_secrets(cluster: FakeCluster, namespace: str, refs: list[str]) -> BundlePayload:
    """Reassemble a bundle payload from its backing secrets."""
    entries = {}
    for ref in refs:
        secret = cluster.stored(SECRET_GVK, namespace, ref)
        for key, data in secret["data"].items():
            entries[key] = base64.b64decode(data)
    return BundlePayload(entries=entries)


def config_map(name: str, namespace: str = "default", **data: str) -> ManifestObject:
    return ManifestObject(
        gvk=GroupVersionKind("", "v1", "ConfigMap"),
        namespace=namespace,
        name=name,
        content={"data": dict(data)},
    )


# =============================================================================
# Type registry
# =============================================================================


@pytest.fixture
def type_registry() -> TypeRegistry:
    """Default four-role type registry."""
    return build_type_registry()


@pytest.fixture
def management_types(type_registry) -> TypeSet:
    return type_registry.resolve(ClusterRole.MANAGEMENT)


@pytest.fixture
def fleet_member_types(type_registry) -> TypeSet:
    return type_registry.resolve(ClusterRole.FLEET_MEMBER)


# =============================================================================
# Cluster and services
# =============================================================================


@pytest.fixture
def cluster() -> FakeCluster:
    """Empty in-memory management cluster."""
    return FakeCluster()


@pytest.fixture
def applier_settings() -> ApplierSettings:
    return ApplierSettings(conflict_retries=3)


@pytest.fixture
def applier(cluster, management_types, applier_settings) -> Applier:
    return Applier(cluster, management_types, applier_settings)


@pytest.fixture
def managed_resource_settings() -> ManagedResourceSettings:
    return ManagedResourceSettings()


@pytest.fixture
def handoff(applier, managed_resource_settings) -> ManagedResourceHandoff:
    return ManagedResourceHandoff(applier, managed_resource_settings)


@pytest.fixture
def fleet_member_registry(fleet_member_types) -> ManagedResourceRegistry:
    return ManagedResourceRegistry(fleet_member_types)


@pytest.fixture
def access_settings() -> AccessSettings:
    return AccessSettings()


@pytest.fixture
def ca_secret() -> dict[str, Any]:
    """CA secret as written by the secrets manager."""
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": "ca", "namespace": "shoot--foo--bar"},
        "data": {"bundle.crt": base64.b64encode(CA_BUNDLE).decode()},
    }


@pytest.fixture
def secrets_manager(ca_secret) -> FakeSecretsManager:
    return FakeSecretsManager({"ca": ca_secret})


@pytest.fixture
def issuer(
    applier, handoff, secrets_manager, fleet_member_registry, access_settings
) -> ScopedAccessIssuer:
    return ScopedAccessIssuer(
        applier,
        handoff,
        secrets_manager,
        fleet_member_registry,
        access_settings,
    )


# =============================================================================
# Markers
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: Integration tests (require a real cluster)"
    )
