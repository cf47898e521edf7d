"""Typed resource objects handled by the applier and the bundle registry."""

import copy
from typing import Any, NamedTuple

from pydantic import Field, field_validator, model_validator

from .base import FleetBaseModel


class GroupKind(NamedTuple):
    """API group and kind, the key of merge function dispatch."""

    group: str
    kind: str

    def __str__(self) -> str:
        return f"{self.kind}.{self.group}" if self.group else self.kind


class GroupVersionKind(NamedTuple):
    """Fully qualified resource type."""

    group: str
    version: str
    kind: str

    @classmethod
    def from_api_version(cls, api_version: str, kind: str) -> "GroupVersionKind":
        """Split an apiVersion string ("group/version" or "version")."""
        group, _, version = api_version.rpartition("/")
        return cls(group=group, version=version, kind=kind)

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    @property
    def group_kind(self) -> GroupKind:
        return GroupKind(self.group, self.kind)

    def __str__(self) -> str:
        return f"{self.api_version}, Kind={self.kind}"


class ObjectKey(NamedTuple):
    """Identity of an object on a cluster."""

    gvk: GroupVersionKind
    namespace: str
    name: str

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.gvk.kind} {self.namespace}/{self.name} ({self.gvk.api_version})"
        return f"{self.gvk.kind} {self.name} ({self.gvk.api_version})"


class ManifestObject(FleetBaseModel):
    """A desired resource object.

    content holds the full object as the cluster API sees it; gvk,
    namespace and name are authoritative and are written into the
    content on validation.
    """

    gvk: GroupVersionKind
    namespace: str = ""
    name: str
    content: dict[str, Any] = Field(default_factory=dict)

    @field_validator("gvk")
    @classmethod
    def validate_gvk(cls, v: GroupVersionKind) -> GroupVersionKind:
        if not v.version or not v.kind:
            raise ValueError("version and kind are required")
        return v

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v:
            raise ValueError("name is required")
        return v

    @classmethod
    def from_dict(cls, doc: dict[str, Any]) -> "ManifestObject":
        """Build from a plain object as returned by the API or a YAML document."""
        if not isinstance(doc, dict):
            raise ValueError(f"Object must be a mapping, got {type(doc).__name__}")
        api_version = doc.get("apiVersion")
        kind = doc.get("kind")
        if not api_version or not kind:
            raise ValueError(f"Object is missing apiVersion or kind: {doc}")
        metadata = doc.get("metadata") or {}
        return cls(
            gvk=GroupVersionKind.from_api_version(api_version, kind),
            namespace=metadata.get("namespace") or "",
            name=metadata.get("name") or "",
            content=copy.deepcopy(doc),
        )

    @model_validator(mode="after")
    def sync_identity(self) -> "ManifestObject":
        """Write gvk, namespace and name into the content."""
        self.content["apiVersion"] = self.gvk.api_version
        self.content["kind"] = self.gvk.kind
        metadata = self.content.get("metadata")
        metadata = dict(metadata) if isinstance(metadata, dict) else {}
        self.content["metadata"] = metadata
        metadata["name"] = self.name
        if self.namespace:
            metadata["namespace"] = self.namespace
        else:
            metadata.pop("namespace", None)
        return self

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.gvk, self.namespace, self.name)

    def to_dict(self) -> dict[str, Any]:
        """Return a deep copy of the full object."""
        return copy.deepcopy(self.content)
