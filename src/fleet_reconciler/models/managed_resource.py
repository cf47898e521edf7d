"""Managed resource bundle models.

A bundle record and the secrets it references are written by this
package; the status block is written by the remote agent only and is
never sent back on update.
"""

from enum import Enum
from typing import Any

from pydantic import Field

from .base import FleetBaseModel
from .manifest import GroupVersionKind, ManifestObject

MANAGED_RESOURCE_KIND = "ManagedResource"

CONDITION_RESOURCES_APPLIED = "ResourcesApplied"
CONDITION_RESOURCES_HEALTHY = "ResourcesHealthy"
CONDITION_RESOURCES_PROGRESSING = "ResourcesProgressing"

DOCUMENT_SEPARATOR = b"---\n"


class BundlePhase(str, Enum):
    """Convergence phase derived from the agent-written status."""

    PENDING = "Pending"
    PROGRESSING = "Progressing"
    RECONCILED = "Reconciled"
    ERROR = "Error"


class BundleCondition(FleetBaseModel):
    """A single status condition written by the remote agent."""

    type: str
    status: str = "Unknown"
    reason: str | None = None
    message: str | None = None


class ManagedResourceStatus(FleetBaseModel):
    """Status block of a bundle record."""

    observed_generation: int = 0
    conditions: list[BundleCondition] = Field(default_factory=list)

    def condition(self, condition_type: str) -> BundleCondition | None:
        for cond in self.conditions:
            if cond.type == condition_type:
                return cond
        return None


class BundlePayload(FleetBaseModel):
    """Ordered, codec-encoded objects of one bundle keyed by file name."""

    entries: dict[str, bytes] = Field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def size(self) -> int:
        return sum(len(data) for data in self.entries.values())

    def to_bytes(self) -> bytes:
        """Concatenate all entries into a single multi-document payload."""
        return b"".join(
            data if data.startswith(DOCUMENT_SEPARATOR) else DOCUMENT_SEPARATOR + data
            for data in self.entries.values()
        )


class ManagedResourceBundle(FleetBaseModel):
    """Record handing a set of serialized objects to the remote agent."""

    namespace: str
    name: str
    class_name: str | None = None
    secret_refs: list[str] = Field(default_factory=list)
    keep_objects: bool = False
    force_overwrite: bool = False
    labels: dict[str, str] = Field(default_factory=dict)
    generation: int = 0
    status: ManagedResourceStatus | None = None

    @property
    def phase(self) -> BundlePhase:
        status = self.status
        if status is None or not status.conditions:
            return BundlePhase.PENDING
        if self.generation and status.observed_generation < self.generation:
            return BundlePhase.PENDING

        applied = status.condition(CONDITION_RESOURCES_APPLIED)
        healthy = status.condition(CONDITION_RESOURCES_HEALTHY)
        progressing = status.condition(CONDITION_RESOURCES_PROGRESSING)

        if (applied and applied.status == "False") or (healthy and healthy.status == "False"):
            return BundlePhase.ERROR
        if progressing and progressing.status == "True":
            return BundlePhase.PROGRESSING
        if applied and applied.status == "True" and healthy and healthy.status == "True":
            return BundlePhase.RECONCILED
        return BundlePhase.PROGRESSING

    def to_manifest(self, api_version: str) -> ManifestObject:
        """Render the record for writing; the status block is never included."""
        spec: dict[str, Any] = {
            "secretRefs": [{"name": ref} for ref in self.secret_refs],
            "keepObjects": self.keep_objects,
            "forceOverwrite": self.force_overwrite,
        }
        if self.class_name:
            spec["class"] = self.class_name

        metadata: dict[str, Any] = {"name": self.name, "namespace": self.namespace}
        if self.labels:
            metadata["labels"] = dict(self.labels)

        return ManifestObject(
            gvk=GroupVersionKind.from_api_version(api_version, MANAGED_RESOURCE_KIND),
            namespace=self.namespace,
            name=self.name,
            content={"metadata": metadata, "spec": spec},
        )

    @classmethod
    def from_manifest(cls, doc: dict[str, Any]) -> "ManagedResourceBundle":
        """Parse a stored record, including its externally written status."""
        metadata = doc.get("metadata") or {}
        spec = doc.get("spec") or {}
        raw_status = doc.get("status")

        status = None
        if raw_status:
            status = ManagedResourceStatus(
                observed_generation=raw_status.get("observedGeneration", 0),
                conditions=[
                    BundleCondition(
                        type=c.get("type", ""),
                        status=c.get("status", "Unknown"),
                        reason=c.get("reason"),
                        message=c.get("message"),
                    )
                    for c in raw_status.get("conditions") or []
                ],
            )

        return cls(
            namespace=metadata.get("namespace", ""),
            name=metadata.get("name", ""),
            class_name=spec.get("class"),
            secret_refs=[ref["name"] for ref in spec.get("secretRefs") or []],
            keep_objects=bool(spec.get("keepObjects", False)),
            force_overwrite=bool(spec.get("forceOverwrite", False)),
            labels=metadata.get("labels") or {},
            generation=metadata.get("generation", 0),
            status=status,
        )
