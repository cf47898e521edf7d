"""Cluster type registry.

Maps each cluster role to the set of API types valid on that cluster and
the codec used to write them into bundles. A registry is built once at
process start and passed explicitly to every component that encodes or
decodes objects; it cannot be changed afterwards.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

import yaml

from ..errors import EncodingError, UnknownRoleError, UnsupportedKindError
from ..models import ClusterRole, GroupVersionKind, ManifestObject


def _kinds(api_version: str, *kinds: str) -> frozenset[GroupVersionKind]:
    return frozenset(GroupVersionKind.from_api_version(api_version, kind) for kind in kinds)


CORE_KINDS = _kinds(
    "v1",
    "ConfigMap",
    "Endpoints",
    "Event",
    "LimitRange",
    "Namespace",
    "PersistentVolumeClaim",
    "Pod",
    "ResourceQuota",
    "Secret",
    "Service",
    "ServiceAccount",
)
RBAC_KINDS = _kinds(
    "rbac.authorization.k8s.io/v1",
    "ClusterRole",
    "ClusterRoleBinding",
    "Role",
    "RoleBinding",
)
APPS_KINDS = _kinds("apps/v1", "DaemonSet", "Deployment", "ReplicaSet", "StatefulSet")
BATCH_KINDS = _kinds("batch/v1", "CronJob", "Job")
POLICY_KINDS = _kinds("policy/v1", "PodDisruptionBudget")
COORDINATION_KINDS = _kinds("coordination.k8s.io/v1", "Lease")
NETWORKING_KINDS = _kinds("networking.k8s.io/v1", "Ingress", "NetworkPolicy")
AUTOSCALING_KINDS = _kinds("autoscaling/v2", "HorizontalPodAutoscaler")
ADMISSION_KINDS = _kinds(
    "admissionregistration.k8s.io/v1",
    "MutatingWebhookConfiguration",
    "ValidatingWebhookConfiguration",
)
API_EXTENSIONS_KINDS = _kinds("apiextensions.k8s.io/v1", "CustomResourceDefinition")
API_REGISTRATION_KINDS = _kinds("apiregistration.k8s.io/v1", "APIService")
MANAGED_RESOURCE_KINDS = _kinds("resources.gardener.cloud/v1alpha1", "ManagedResource")
EXTENSIONS_KINDS = _kinds(
    "extensions.gardener.cloud/v1alpha1",
    "BackupBucket",
    "BackupEntry",
    "Cluster",
    "ContainerRuntime",
    "ControlPlane",
    "DNSRecord",
    "Extension",
    "Infrastructure",
    "Network",
    "OperatingSystemConfig",
    "Worker",
)
MACHINE_KINDS = _kinds(
    "machine.sapcloud.io/v1alpha1",
    "Machine",
    "MachineClass",
    "MachineDeployment",
    "MachineSet",
)
FLEET_CORE_KINDS = _kinds(
    "core.gardener.cloud/v1beta1",
    "BackupBucket",
    "BackupEntry",
    "CloudProfile",
    "ControllerInstallation",
    "ControllerRegistration",
    "Project",
    "Quota",
    "SecretBinding",
    "Seed",
    "Shoot",
)

DEFAULT_ROLE_KINDS: Mapping[ClusterRole, frozenset[GroupVersionKind]] = MappingProxyType(
    {
        ClusterRole.MANAGEMENT: (
            CORE_KINDS
            | RBAC_KINDS
            | APPS_KINDS
            | BATCH_KINDS
            | POLICY_KINDS
            | COORDINATION_KINDS
            | NETWORKING_KINDS
            | AUTOSCALING_KINDS
            | MANAGED_RESOURCE_KINDS
            | EXTENSIONS_KINDS
            | MACHINE_KINDS
        ),
        ClusterRole.FLEET_MEMBER: (
            CORE_KINDS
            | RBAC_KINDS
            | APPS_KINDS
            | BATCH_KINDS
            | POLICY_KINDS
            | COORDINATION_KINDS
            | NETWORKING_KINDS
            | AUTOSCALING_KINDS
            | ADMISSION_KINDS
            | API_EXTENSIONS_KINDS
            | API_REGISTRATION_KINDS
        ),
        ClusterRole.TENANT: CORE_KINDS | RBAC_KINDS | COORDINATION_KINDS | FLEET_CORE_KINDS,
        ClusterRole.AUXILIARY: CORE_KINDS | FLEET_CORE_KINDS,
    }
)


class YAMLCodec:
    """Deterministic YAML encoding of resource objects.

    Keys are sorted so that the same object always encodes to the same
    bytes, which keeps bundle secrets stable across reconciles.
    """

    def encode(self, obj: ManifestObject) -> bytes:
        return yaml.safe_dump(obj.to_dict(), sort_keys=True, default_flow_style=False).encode()

    def decode(self, data: bytes | str) -> ManifestObject:
        objects = self.decode_all(data)
        if len(objects) != 1:
            raise EncodingError(f"Expected exactly one object, found {len(objects)}")
        return objects[0]

    def decode_all(self, data: bytes | str) -> list[ManifestObject]:
        """Decode a (multi-document) YAML stream, skipping empty documents."""
        try:
            docs = [doc for doc in yaml.safe_load_all(data) if doc]
            return [ManifestObject.from_dict(doc) for doc in docs]
        except (yaml.YAMLError, ValueError) as e:
            raise EncodingError(f"Cannot decode manifest: {e}") from e


@dataclass(frozen=True)
class TypeSet:
    """Kinds encodable and decodable for one cluster role."""

    role: ClusterRole
    kinds: frozenset[GroupVersionKind]
    codec: YAMLCodec = field(default_factory=YAMLCodec, compare=False)

    def supports(self, gvk: GroupVersionKind) -> bool:
        return gvk in self.kinds

    def check(self, obj: ManifestObject) -> None:
        """Raise UnsupportedKindError if the object's kind is not in this set."""
        if not self.supports(obj.gvk):
            raise UnsupportedKindError(
                f"Kind {obj.gvk} is not registered for cluster role {self.role.value}",
                obj.key,
            )

    def encode(self, obj: ManifestObject) -> bytes:
        self.check(obj)
        return self.codec.encode(obj)

    def decode(self, data: bytes | str) -> ManifestObject:
        obj = self.codec.decode(data)
        self.check(obj)
        return obj

    def decode_all(self, data: bytes | str) -> list[ManifestObject]:
        objects = self.codec.decode_all(data)
        for obj in objects:
            self.check(obj)
        return objects


class TypeRegistry:
    """Read-only mapping from cluster role to type set."""

    def __init__(self, type_sets: Mapping[ClusterRole, TypeSet]):
        self._type_sets: Mapping[ClusterRole, TypeSet] = MappingProxyType(dict(type_sets))

    def __contains__(self, role: object) -> bool:
        return role in self._type_sets

    @property
    def roles(self) -> list[ClusterRole]:
        return list(self._type_sets)

    def resolve(self, role: ClusterRole) -> TypeSet:
        """Return the type set of a role.

        Raises:
            UnknownRoleError: If no type set is registered for the role
        """
        try:
            return self._type_sets[role]
        except KeyError:
            raise UnknownRoleError(f"No type set registered for cluster role {role!r}") from None


def build_type_registry(
    extra: Mapping[ClusterRole, Iterable[GroupVersionKind]] | None = None,
    codec: YAMLCodec | None = None,
) -> TypeRegistry:
    """Build the default four-role registry.

    Args:
        extra: Additional kinds per role (e.g. custom resources)
        codec: Codec shared by all type sets

    Returns:
        Immutable TypeRegistry
    """
    codec = codec or YAMLCodec()
    extra = extra or {}

    type_sets = {}
    for role, kinds in DEFAULT_ROLE_KINDS.items():
        type_sets[role] = TypeSet(
            role=role,
            kinds=kinds | frozenset(extra.get(role, ())),
            codec=codec,
        )
    return TypeRegistry(type_sets)
