"""Declarative applier.

Creates, merge-updates or deletes single objects against one cluster.
An update is a read-merge-update cycle guarded by the object's
resourceVersion; on a conflict the cycle is repeated a bounded number of
times. Merged objects equal to the stored object are not written, so
re-applying the same desired state is a no-op.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, TypeVar

from ..cluster import ObjectClient, TypeSet, request_deadline
from ..config import ApplierSettings, get_settings
from ..errors import (
    AlreadyExistsError,
    ConflictError,
    ConflictExceededError,
    DeadlineExceededError,
    NotFoundError,
)
from ..models import GroupKind, GroupVersionKind, ManifestObject, ObjectKey, PropagationPolicy
from ..observability import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# MergeFunc(desired, current) -> object to submit. Must not mutate its arguments.
MergeFunc = Callable[[dict[str, Any], dict[str, Any]], dict[str, Any]]

SERVER_MANAGED_METADATA = (
    "creationTimestamp",
    "deletionGracePeriodSeconds",
    "deletionTimestamp",
    "generation",
    "managedFields",
    "resourceVersion",
    "selfLink",
    "uid",
)


def merge_service(desired: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    """Keep addresses and ports allocated by the API server."""
    merged = copy.deepcopy(desired)
    spec = merged.setdefault("spec", {})
    old_spec = current.get("spec") or {}

    if spec.get("type", "ClusterIP") == old_spec.get("type", "ClusterIP"):
        for fld in ("clusterIP", "clusterIPs"):
            if fld not in spec and fld in old_spec:
                spec[fld] = copy.deepcopy(old_spec[fld])

    if spec.get("type") in ("NodePort", "LoadBalancer"):
        old_ports = {
            (p.get("port"), p.get("protocol", "TCP")): p
            for p in old_spec.get("ports") or []
        }
        for port in spec.get("ports") or []:
            old_port = old_ports.get((port.get("port"), port.get("protocol", "TCP")))
            if old_port and "nodePort" not in port and "nodePort" in old_port:
                port["nodePort"] = old_port["nodePort"]
        if (
            spec.get("externalTrafficPolicy") == "Local"
            and "healthCheckNodePort" not in spec
            and "healthCheckNodePort" in old_spec
        ):
            spec["healthCheckNodePort"] = old_spec["healthCheckNodePort"]

    return merged


def merge_service_account(desired: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    """Keep token and pull secrets attached by other controllers."""
    merged = copy.deepcopy(desired)
    for fld in ("secrets", "imagePullSecrets"):
        if fld not in merged and fld in current:
            merged[fld] = copy.deepcopy(current[fld])
    return merged


DEFAULT_MERGE_FUNCS: Mapping[GroupKind, MergeFunc] = MappingProxyType(
    {
        GroupKind("", "Service"): merge_service,
        GroupKind("", "ServiceAccount"): merge_service_account,
    }
)


@dataclass(frozen=True)
class ApplierOptions:
    """Per-call applier options.

    A kind without a merge function is replaced wholesale (apart from the
    resourceVersion, finalizers and status of the stored object).
    """

    merge_funcs: Mapping[GroupKind, MergeFunc] = field(default_factory=lambda: DEFAULT_MERGE_FUNCS)
    conflict_retries: int | None = None
    timeout_seconds: float | None = None

    def with_merge_funcs(self, merge_funcs: Mapping[GroupKind, MergeFunc]) -> "ApplierOptions":
        """Return options with additional merge functions layered on top."""
        return replace(self, merge_funcs=MappingProxyType({**self.merge_funcs, **merge_funcs}))


def merge_objects(
    desired: dict[str, Any],
    current: dict[str, Any],
    merge_funcs: Mapping[GroupKind, MergeFunc],
) -> dict[str, Any]:
    """Combine the desired object with the fields the stored object owns."""
    merged = copy.deepcopy(desired)
    metadata = merged.setdefault("metadata", {})
    old_metadata = current.get("metadata") or {}

    metadata["resourceVersion"] = old_metadata.get("resourceVersion")
    if "finalizers" not in metadata and old_metadata.get("finalizers"):
        metadata["finalizers"] = list(old_metadata["finalizers"])
    if "status" in current:
        merged["status"] = copy.deepcopy(current["status"])

    gvk = GroupVersionKind.from_api_version(merged.get("apiVersion", ""), merged.get("kind", ""))
    merge = merge_funcs.get(gvk.group_kind)
    if merge is not None:
        merged = merge(merged, copy.deepcopy(current))
    return merged


def _normalize(obj: dict[str, Any]) -> dict[str, Any]:
    normalized = copy.deepcopy(obj)
    metadata = normalized.get("metadata") or {}
    for fld in SERVER_MANAGED_METADATA:
        metadata.pop(fld, None)
    for fld in [k for k, v in metadata.items() if v in (None, {}, [])]:
        metadata.pop(fld)
    return normalized


def has_changes(merged: dict[str, Any], current: dict[str, Any]) -> bool:
    """Whether submitting merged would change the stored object."""
    return _normalize(merged) != _normalize(current)


class Applier:
    """Declarative applier for one cluster.

    Every object is checked against the cluster's type set before any API
    call is made.
    """

    def __init__(
        self,
        client: ObjectClient,
        type_set: TypeSet,
        settings: ApplierSettings | None = None,
    ):
        self.client = client
        self.type_set = type_set
        self.settings = settings or get_settings().applier

    async def _bounded(self, key: ObjectKey, call: Awaitable[T], timeout: float | None) -> T:
        timeout = timeout if timeout is not None else self.settings.timeout_seconds
        if timeout is None:
            return await call
        try:
            with request_deadline(timeout):
                async with asyncio.timeout(timeout):
                    return await call
        except DeadlineExceededError:
            raise
        except TimeoutError as e:
            raise DeadlineExceededError(f"Deadline of {timeout}s exceeded", key) from e

    async def apply(self, obj: ManifestObject, options: ApplierOptions | None = None) -> None:
        """Create the object, or merge-update it if it exists.

        Raises:
            UnsupportedKindError: If the kind is outside the cluster's type set
            ConflictExceededError: If conflicts persist after the retry bound
            DeadlineExceededError: If the call exceeds its deadline
        """
        options = options or ApplierOptions()
        self.type_set.check(obj)
        await self._bounded(obj.key, self._apply(obj, options), options.timeout_seconds)

    async def _apply(self, obj: ManifestObject, options: ApplierOptions) -> None:
        key = obj.key
        desired = obj.to_dict()
        retries = (
            options.conflict_retries
            if options.conflict_retries is not None
            else self.settings.conflict_retries
        )
        attempts = max(0, retries) + 1

        for attempt in range(1, attempts + 1):
            try:
                current = await self.client.get(key.gvk, key.namespace, key.name)
            except NotFoundError:
                try:
                    await self.client.create(desired)
                except AlreadyExistsError:
                    logger.debug("Create raced with another writer", key=str(key), attempt=attempt)
                    continue
                logger.info("Object created", kind=key.gvk.kind, namespace=key.namespace, name=key.name)
                return

            merged = merge_objects(desired, current, options.merge_funcs)
            if not has_changes(merged, current):
                logger.debug("Object unchanged", kind=key.gvk.kind, namespace=key.namespace, name=key.name)
                return

            try:
                await self.client.update(merged)
            except ConflictError:
                logger.debug("Update conflict, retrying", key=str(key), attempt=attempt)
                continue
            logger.info("Object updated", kind=key.gvk.kind, namespace=key.namespace, name=key.name)
            return

        logger.warning("Conflict retries exhausted", key=str(key), attempts=attempts)
        raise ConflictExceededError(key, attempts)

    def _grace_period(self, propagation: PropagationPolicy) -> int:
        if PropagationPolicy(propagation) == PropagationPolicy.BACKGROUND:
            return self.settings.background_grace_period_seconds
        return self.settings.foreground_grace_period_seconds

    async def delete(
        self,
        obj: ManifestObject,
        propagation: PropagationPolicy = PropagationPolicy.FOREGROUND,
        timeout_seconds: float | None = None,
    ) -> None:
        """Delete the object; an absent object is not an error."""
        self.type_set.check(obj)
        await self._bounded(obj.key, self._delete(obj.key, propagation), timeout_seconds)

    async def _delete(self, key: ObjectKey, propagation: PropagationPolicy) -> None:
        try:
            await self.client.delete(
                key.gvk,
                key.namespace,
                key.name,
                propagation_policy=PropagationPolicy(propagation),
                grace_period_seconds=self._grace_period(propagation),
            )
        except NotFoundError:
            logger.debug("Object already absent", kind=key.gvk.kind, namespace=key.namespace, name=key.name)
            return
        logger.info(
            "Object deleted",
            kind=key.gvk.kind,
            namespace=key.namespace,
            name=key.name,
            propagation=PropagationPolicy(propagation).value,
        )

    async def apply_all(
        self,
        objects: Iterable[ManifestObject],
        options: ApplierOptions | None = None,
    ) -> None:
        """Apply objects in the given order, stopping at the first error.

        Objects applied before a failure stay applied; retrying the whole
        batch converges.
        """
        for obj in objects:
            await self.apply(obj, options)

    async def delete_all(
        self,
        objects: Iterable[ManifestObject],
        propagation: PropagationPolicy = PropagationPolicy.FOREGROUND,
    ) -> None:
        """Delete objects in the given order, stopping at the first error."""
        for obj in objects:
            await self.delete(obj, propagation)

    async def apply_manifest(self, manifest: str | bytes, options: ApplierOptions | None = None) -> None:
        """Apply every document of a multi-document YAML manifest."""
        await self.apply_all(self.type_set.decode_all(manifest), options)

    async def delete_manifest(
        self,
        manifest: str | bytes,
        propagation: PropagationPolicy = PropagationPolicy.FOREGROUND,
    ) -> None:
        """Delete every object of a multi-document YAML manifest."""
        await self.delete_all(self.type_set.decode_all(manifest), propagation)
