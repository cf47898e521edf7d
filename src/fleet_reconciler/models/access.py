"""Scoped access credential and RBAC grant models."""

import base64
from typing import Any

import yaml
from pydantic import Field, field_validator

from .base import FleetBaseModel
from .manifest import GroupVersionKind, ManifestObject

SECRET_GVK = GroupVersionKind("", "v1", "Secret")
ROLE_GVK = GroupVersionKind("rbac.authorization.k8s.io", "v1", "Role")
ROLE_BINDING_GVK = GroupVersionKind("rbac.authorization.k8s.io", "v1", "RoleBinding")
CLUSTER_ROLE_GVK = GroupVersionKind("rbac.authorization.k8s.io", "v1", "ClusterRole")
CLUSTER_ROLE_BINDING_GVK = GroupVersionKind("rbac.authorization.k8s.io", "v1", "ClusterRoleBinding")

RBAC_API_GROUP = "rbac.authorization.k8s.io"
COORDINATION_API_GROUP = "coordination.k8s.io"

DATA_KEY_KUBECONFIG = "kubeconfig"
LABEL_PURPOSE = "resources.gardener.cloud/purpose"
LABEL_PURPOSE_TOKEN_REQUESTOR = "token-requestor"
ANNOTATION_SERVICE_ACCOUNT_NAME = "serviceaccount.resources.gardener.cloud/name"
ANNOTATION_SERVICE_ACCOUNT_NAMESPACE = "serviceaccount.resources.gardener.cloud/namespace"
ANNOTATION_TOKEN_RENEW_TIMESTAMP = "serviceaccount.resources.gardener.cloud/token-renew-timestamp"


class AccessValues(FleetBaseModel):
    """Inputs of a scoped access issuance."""

    server_in_cluster: str = Field(description="In-cluster address of the target API server")

    @field_validator("server_in_cluster")
    @classmethod
    def validate_server(cls, v: str) -> str:
        if not v:
            raise ValueError("server address is required")
        return v


def render_kubeconfig(context_name: str, server: str, ca_bundle: bytes, token: str) -> bytes:
    """Render a minimal single-context kubeconfig."""
    kubeconfig = {
        "apiVersion": "v1",
        "kind": "Config",
        "current-context": context_name,
        "clusters": [
            {
                "name": context_name,
                "cluster": {
                    "server": server,
                    "certificate-authority-data": base64.b64encode(ca_bundle).decode(),
                },
            }
        ],
        "contexts": [
            {
                "name": context_name,
                "context": {"cluster": context_name, "user": context_name},
            }
        ],
        "users": [{"name": context_name, "user": {"token": token}}],
        "preferences": {},
    }
    return yaml.safe_dump(kubeconfig, sort_keys=True).encode()


def token_from_kubeconfig(raw: bytes) -> str:
    """Extract the bearer token of the first user, or "" if there is none."""
    try:
        kubeconfig = yaml.safe_load(raw)
    except yaml.YAMLError:
        return ""
    if not isinstance(kubeconfig, dict):
        return ""
    for user in kubeconfig.get("users") or []:
        token = (user.get("user") or {}).get("token")
        if token:
            return token
    return ""


def set_kubeconfig_token(raw: bytes, token: str) -> bytes:
    """Return the kubeconfig with the token of every user replaced."""
    kubeconfig = yaml.safe_load(raw)
    for user in kubeconfig.get("users") or []:
        user.setdefault("user", {})["token"] = token
    return yaml.safe_dump(kubeconfig, sort_keys=True).encode()


class ScopedAccessCredential(FleetBaseModel):
    """Cluster access configuration for a remote agent or watchdog.

    The bearer token is left empty here and filled in by the token
    side channel, which locates the secret through its purpose label and
    service account annotations.
    """

    secret_name: str
    namespace: str
    ca_secret_name: str
    server: str
    ca_bundle: bytes
    token: str = ""
    service_account_name: str
    service_account_namespace: str

    def kubeconfig(self) -> bytes:
        return render_kubeconfig(self.namespace, self.server, self.ca_bundle, self.token)

    def to_manifest(self) -> ManifestObject:
        return ManifestObject(
            gvk=SECRET_GVK,
            namespace=self.namespace,
            name=self.secret_name,
            content={
                "metadata": {
                    "labels": {LABEL_PURPOSE: LABEL_PURPOSE_TOKEN_REQUESTOR},
                    "annotations": {
                        ANNOTATION_SERVICE_ACCOUNT_NAME: self.service_account_name,
                        ANNOTATION_SERVICE_ACCOUNT_NAMESPACE: self.service_account_namespace,
                    },
                },
                "type": "Opaque",
                "data": {
                    DATA_KEY_KUBECONFIG: base64.b64encode(self.kubeconfig()).decode(),
                },
            },
        )


class PolicyRule(FleetBaseModel):
    """A single RBAC rule."""

    api_groups: list[str]
    resources: list[str]
    verbs: list[str]
    resource_names: list[str] = Field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        rule: dict[str, Any] = {
            "apiGroups": list(self.api_groups),
            "resources": list(self.resources),
            "verbs": list(self.verbs),
        }
        if self.resource_names:
            rule["resourceNames"] = list(self.resource_names)
        return rule


class ServiceAccountSubject(FleetBaseModel):
    """Service account a binding grants to."""

    name: str
    namespace: str


class RBACGrant(FleetBaseModel):
    """A role and its binding to one service account.

    A grant without a namespace renders as ClusterRole/ClusterRoleBinding.
    """

    name: str
    namespace: str | None = None
    rules: list[PolicyRule]
    subject: ServiceAccountSubject
    labels: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def for_credential(
        cls,
        name: str,
        namespace: str | None,
        rules: list[PolicyRule],
        credential: ScopedAccessCredential,
    ) -> "RBACGrant":
        """Bind the grant to the service account behind a credential."""
        return cls(
            name=name,
            namespace=namespace,
            rules=rules,
            subject=ServiceAccountSubject(
                name=credential.service_account_name,
                namespace=credential.service_account_namespace,
            ),
        )

    @property
    def cluster_scoped(self) -> bool:
        return not self.namespace

    def _metadata(self) -> dict[str, Any]:
        metadata: dict[str, Any] = {"name": self.name}
        if self.labels:
            metadata["labels"] = dict(self.labels)
        return metadata

    def role(self) -> ManifestObject:
        return ManifestObject(
            gvk=CLUSTER_ROLE_GVK if self.cluster_scoped else ROLE_GVK,
            namespace=self.namespace or "",
            name=self.name,
            content={
                "metadata": self._metadata(),
                "rules": [rule.to_dict() for rule in self.rules],
            },
        )

    def binding(self) -> ManifestObject:
        return ManifestObject(
            gvk=CLUSTER_ROLE_BINDING_GVK if self.cluster_scoped else ROLE_BINDING_GVK,
            namespace=self.namespace or "",
            name=self.name,
            content={
                "metadata": self._metadata(),
                "roleRef": {
                    "apiGroup": RBAC_API_GROUP,
                    "kind": "ClusterRole" if self.cluster_scoped else "Role",
                    "name": self.name,
                },
                "subjects": [
                    {
                        "kind": "ServiceAccount",
                        "name": self.subject.name,
                        "namespace": self.subject.namespace,
                    }
                ],
            },
        )

    def objects(self) -> list[ManifestObject]:
        """Role first, then the binding referencing it."""
        return [self.role(), self.binding()]
