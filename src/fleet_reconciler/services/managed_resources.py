"""Managed resource bundles.

Objects destined for a remote cluster are serialized into a bundle
payload, written into size-bounded secrets in the management cluster
and referenced from a ManagedResource record. The remote agent applies
the bundle on its own schedule; writing the record is the end of the
handoff.
"""

from __future__ import annotations

import asyncio
import base64
from collections.abc import Mapping

from ..cluster import ObjectReader, TypeSet
from ..config import ManagedResourceSettings, get_settings
from ..errors import DeadlineExceededError, EncodingError, NotFoundError, UnsupportedKindError
from ..models import (
    MANAGED_RESOURCE_KIND,
    SECRET_GVK,
    BundlePayload,
    BundlePhase,
    GroupVersionKind,
    ManagedResourceBundle,
    ManifestObject,
    ObjectKey,
    PropagationPolicy,
)
from ..observability import get_logger
from .applier import Applier

logger = get_logger(__name__)

LABEL_ORIGIN = "origin"


def entry_key(obj: ManifestObject) -> str:
    """File name of an object inside a bundle payload."""
    key = f"{obj.gvk.kind.lower()}__{obj.namespace}__{obj.name}.yaml"
    return key.replace(":", "_")


class ManagedResourceRegistry:
    """Serializes objects for one remote cluster role into bundle payloads."""

    def __init__(self, type_set: TypeSet):
        self.type_set = type_set

    def serialize(self, *objects: ManifestObject) -> BundlePayload:
        """Encode objects, in order, into a bundle payload.

        Raises:
            EncodingError: If an object's kind is outside the type set or two
                objects map to the same entry
        """
        entries: dict[str, bytes] = {}
        for obj in objects:
            key = entry_key(obj)
            if key in entries:
                raise EncodingError(f"Duplicate bundle entry {key!r}", obj.key)
            try:
                entries[key] = self.type_set.encode(obj)
            except UnsupportedKindError as e:
                raise EncodingError(
                    f"Kind {obj.gvk} cannot be encoded for cluster role {self.type_set.role.value}",
                    obj.key,
                ) from e
        return BundlePayload(entries=entries)

    def decode(self, payload: BundlePayload) -> list[ManifestObject]:
        """Decode a payload back into its objects, in payload order."""
        return [self.type_set.decode(data) for data in payload.entries.values()]


def pack_entries(payload: BundlePayload, limit: int) -> list[dict[str, bytes]]:
    """Split payload entries into consecutive groups of at most limit bytes.

    Entries are never split; the same payload always packs the same way.
    """
    chunks: list[dict[str, bytes]] = []
    current: dict[str, bytes] = {}
    size = 0
    for key, data in payload.entries.items():
        entry_size = len(key) + len(data)
        if entry_size > limit:
            raise EncodingError(
                f"Bundle entry {key!r} is {entry_size} bytes, exceeding the {limit} byte secret limit"
            )
        if current and size + entry_size > limit:
            chunks.append(current)
            current, size = {}, 0
        current[key] = data
        size += entry_size
    if current or not chunks:
        chunks.append(current)
    return chunks


class ManagedResourceHandoff:
    """Writes and removes bundle records and their backing secrets.

    The applier must target the management cluster.
    """

    def __init__(self, applier: Applier, settings: ManagedResourceSettings | None = None):
        self.applier = applier
        self.settings = settings or get_settings().managed_resources

    @property
    def gvk(self) -> GroupVersionKind:
        return GroupVersionKind.from_api_version(self.settings.api_version, MANAGED_RESOURCE_KIND)

    def secret_name(self, bundle_name: str, index: int | None = None) -> str:
        name = f"{self.settings.secret_name_prefix}{bundle_name}"
        return name if index is None else f"{name}-{index}"

    def backing_secrets(self, namespace: str, name: str, payload: BundlePayload) -> list[ManifestObject]:
        """Render the secrets carrying a payload, in payload order."""
        chunks = pack_entries(payload, self.settings.secret_size_limit)
        secrets = []
        for index, chunk in enumerate(chunks):
            secrets.append(
                ManifestObject(
                    gvk=SECRET_GVK,
                    namespace=namespace,
                    name=self.secret_name(name, index if len(chunks) > 1 else None),
                    content={
                        "metadata": {"labels": {self.settings.bundle_label: name}},
                        "type": "Opaque",
                        "data": {key: base64.b64encode(data).decode() for key, data in chunk.items()},
                    },
                )
            )
        return secrets

    async def create_for_target(
        self,
        namespace: str,
        name: str,
        class_name: str | None,
        keep_objects: bool,
        payload: BundlePayload,
        force_overwrite: bool = False,
        labels: Mapping[str, str] | None = None,
    ) -> ManagedResourceBundle:
        """Write the backing secrets, then the bundle record.

        Returns once the record is written; the remote agent converges the
        bundle asynchronously.
        """
        secrets = self.backing_secrets(namespace, name, payload)
        bundle = ManagedResourceBundle(
            namespace=namespace,
            name=name,
            class_name=class_name,
            secret_refs=[secret.name for secret in secrets],
            keep_objects=keep_objects,
            force_overwrite=force_overwrite,
            labels={LABEL_ORIGIN: self.settings.origin, **(labels or {})},
        )

        await self.applier.apply_all([*secrets, bundle.to_manifest(self.settings.api_version)])
        await self._prune_secrets(namespace, name, keep=set(bundle.secret_refs))

        logger.info(
            "Managed resource written",
            namespace=namespace,
            name=name,
            secrets=len(secrets),
            objects=len(payload),
            payload_bytes=payload.size,
        )
        return bundle

    async def _bundle_secret_names(self, namespace: str, name: str) -> list[str]:
        secrets = await self.applier.client.list(
            SECRET_GVK, namespace, {self.settings.bundle_label: name}
        )
        return sorted((secret.get("metadata") or {}).get("name", "") for secret in secrets)

    async def _prune_secrets(self, namespace: str, name: str, keep: set[str]) -> None:
        for secret_name in await self._bundle_secret_names(namespace, name):
            if secret_name and secret_name not in keep:
                await self.applier.delete(
                    ManifestObject(gvk=SECRET_GVK, namespace=namespace, name=secret_name)
                )
                logger.debug("Stale bundle secret removed", namespace=namespace, name=secret_name)

    async def delete_bundle(
        self,
        namespace: str,
        name: str,
        propagation: PropagationPolicy = PropagationPolicy.FOREGROUND,
    ) -> None:
        """Delete the bundle record and its backing secrets.

        The objects the bundle described are removed by the remote agent
        once it sees the record disappear.
        """
        await self.applier.delete(
            ManifestObject(gvk=self.gvk, namespace=namespace, name=name), propagation
        )
        await self._prune_secrets(namespace, name, keep=set())
        logger.info("Managed resource deleted", namespace=namespace, name=name)

    async def get_bundle(self, namespace: str, name: str) -> ManagedResourceBundle | None:
        """Read a bundle record with its agent-written status, or None if absent."""
        try:
            doc = await self.applier.client.get(self.gvk, namespace, name)
        except NotFoundError:
            return None
        return ManagedResourceBundle.from_manifest(doc)


async def wait_until_healthy(
    reader: ObjectReader,
    namespace: str,
    name: str,
    interval: float = 5.0,
    timeout: float = 300.0,
    api_version: str | None = None,
) -> ManagedResourceBundle:
    """Poll a bundle record until the remote agent reports it reconciled.

    Not part of the handoff itself: writing a bundle never waits.

    Raises:
        DeadlineExceededError: If the bundle is not reconciled within timeout
    """
    gvk = GroupVersionKind.from_api_version(
        api_version or get_settings().managed_resources.api_version, MANAGED_RESOURCE_KIND
    )
    last = "absent"
    try:
        async with asyncio.timeout(timeout):
            while True:
                try:
                    bundle = ManagedResourceBundle.from_manifest(await reader.get(gvk, namespace, name))
                except NotFoundError:
                    last = "absent"
                else:
                    if bundle.phase == BundlePhase.RECONCILED:
                        return bundle
                    last = BundlePhase(bundle.phase).value
                logger.debug("Waiting for managed resource", namespace=namespace, name=name, phase=last)
                await asyncio.sleep(interval)
    except TimeoutError as e:
        raise DeadlineExceededError(
            f"Managed resource not healthy after {timeout}s (last phase {last})",
            ObjectKey(gvk, namespace, name),
        ) from e
