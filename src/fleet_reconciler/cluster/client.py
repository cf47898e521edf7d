"""Cluster API client capabilities.

Components depend on the narrow protocols below rather than on a full
client: the applier needs an ObjectClient, the access issuer a
SecretLookup. ClusterClient implements the object capabilities over the
kubernetes dynamic client. The blocking calls run in worker threads;
request_deadline() hands each request the time left as its HTTP timeout
so a worker never outlives the deadline of its caller.
"""

from __future__ import annotations

import asyncio
import functools
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Protocol, TypeVar

from kubernetes import client, config, dynamic
from kubernetes.client.rest import ApiException
from kubernetes.dynamic.exceptions import ResourceNotFoundError
from urllib3.exceptions import HTTPError

from ..errors import (
    AlreadyExistsError,
    ApiError,
    ConflictError,
    DeadlineExceededError,
    NotFoundError,
    UnsupportedKindError,
)
from ..models import SECRET_GVK, ClusterRole, GroupVersionKind, ObjectKey, PropagationPolicy
from ..observability import get_logger, log_api_call_end, log_api_call_start
from .scheme import TypeSet

logger = get_logger(__name__)

T = TypeVar("T")

# Absolute time.monotonic() deadline of the current call chain
_deadline: ContextVar[float | None] = ContextVar("request_deadline", default=None)


@contextmanager
def request_deadline(seconds: float | None) -> Iterator[None]:
    """Bound every cluster API request made inside the block.

    Nested deadlines never extend an outer one. Requests get the time left
    as their HTTP timeout, so a worker thread stops at the deadline too.
    """
    if seconds is None:
        yield
        return
    deadline = time.monotonic() + seconds
    outer = _deadline.get()
    if outer is not None:
        deadline = min(deadline, outer)
    token = _deadline.set(deadline)
    try:
        yield
    finally:
        _deadline.reset(token)


class ObjectReader(Protocol):
    """Reads single objects and lists of objects."""

    async def get(self, gvk: GroupVersionKind, namespace: str, name: str) -> dict[str, Any]:
        """Return the stored object or raise NotFoundError."""
        ...

    async def list(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        label_selector: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        ...


class ObjectWriter(Protocol):
    """Writes single objects with optimistic concurrency."""

    async def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Create the object or raise AlreadyExistsError."""
        ...

    async def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace the object; raise ConflictError on a stale resourceVersion."""
        ...

    async def delete(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        name: str,
        propagation_policy: PropagationPolicy,
        grace_period_seconds: int,
    ) -> None:
        """Delete the object or raise NotFoundError."""
        ...


class ObjectClient(ObjectReader, ObjectWriter, Protocol):
    """Reader and writer of one cluster."""

    pass


class SecretLookup(Protocol):
    """Access to secrets owned by an external secrets manager."""

    async def get(self, name: str) -> dict[str, Any] | None:
        """Return the secret object, or None if it does not exist."""
        ...


def _key_of(obj: dict[str, Any]) -> ObjectKey:
    metadata = obj.get("metadata") or {}
    return ObjectKey(
        GroupVersionKind.from_api_version(obj.get("apiVersion", ""), obj.get("kind", "")),
        metadata.get("namespace") or "",
        metadata.get("name") or "",
    )


class ClusterClient:
    """Object client for one cluster, bound to the type set of its role.

    The role cannot change once the client is constructed.
    """

    def __init__(self, dynamic_client: dynamic.DynamicClient, type_set: TypeSet):
        self._dynamic = dynamic_client
        self._type_set = type_set

    @classmethod
    def from_config(
        cls,
        type_set: TypeSet,
        kubeconfig: str | None = None,
        context: str | None = None,
    ) -> "ClusterClient":
        """Create a client from in-cluster config or a kubeconfig file.

        Args:
            type_set: Type set of the cluster's role
            kubeconfig: Path to a kubeconfig file (skips in-cluster config)
            context: Kubeconfig context to use
        """
        if kubeconfig is None:
            try:
                configuration = client.Configuration()
                config.load_incluster_config(client_configuration=configuration)
                api_client = client.ApiClient(configuration)
            except config.ConfigException:
                api_client = config.new_client_from_config(context=context)
        else:
            api_client = config.new_client_from_config(config_file=kubeconfig, context=context)

        logger.info("Cluster client created", role=type_set.role.value)
        return cls(dynamic.DynamicClient(api_client), type_set)

    @property
    def role(self) -> ClusterRole:
        return self._type_set.role

    @property
    def type_set(self) -> TypeSet:
        return self._type_set

    def _resource(self, gvk: GroupVersionKind) -> Any:
        return self._dynamic.resources.get(api_version=gvk.api_version, kind=gvk.kind)

    async def _call(self, operation: str, key: ObjectKey, fn: Callable[..., T]) -> T:
        """Run a blocking client call in a worker thread.

        The call returns or raises only once the worker has stopped, so no
        request is still in flight when a caller sees a cancellation or a
        deadline error.
        """
        deadline = _deadline.get()
        kwargs: dict[str, Any] = {}
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise DeadlineExceededError(f"Deadline passed before {operation}", key)
            kwargs["_request_timeout"] = remaining

        log_api_call_start(logger, operation, key.gvk.kind, key.namespace, key.name)
        start = time.monotonic()

        def failed(error: str) -> None:
            log_api_call_end(
                logger, operation, key.gvk.kind, key.namespace, key.name,
                success=False, duration_ms=(time.monotonic() - start) * 1000, error=error,
            )

        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, functools.partial(fn, **kwargs))
        try:
            result = await asyncio.shield(future)
        except asyncio.CancelledError:
            # The worker thread cannot be interrupted; wait until it has stopped
            await asyncio.wait([future])
            failed("cancelled" if future.exception() else "cancelled after the request completed")
            raise
        except ResourceNotFoundError as e:
            error: Exception = UnsupportedKindError(
                f"Kind {key.gvk} is not served by the cluster", key
            )
            failed(str(error))
            raise error from e
        except ApiException as e:
            error = self._translate(operation, key, e)
            failed(str(error))
            raise error from e
        except (HTTPError, OSError) as e:
            if deadline is not None and time.monotonic() >= deadline:
                error = DeadlineExceededError(f"{operation} timed out", key)
            else:
                error = ApiError(f"{operation} failed: {e}", None, key)
            failed(str(error))
            raise error from e

        log_api_call_end(
            logger, operation, key.gvk.kind, key.namespace, key.name,
            success=True, duration_ms=(time.monotonic() - start) * 1000,
        )
        return result

    @staticmethod
    def _translate(operation: str, key: ObjectKey, e: ApiException) -> Exception:
        if e.status == 404:
            return NotFoundError("Object not found", key)
        if e.status == 409:
            if operation == "create":
                return AlreadyExistsError("Object already exists", key)
            return ConflictError("Object was modified concurrently", key)
        return ApiError(f"{operation} failed ({e.status} {e.reason})", e.status, key)

    async def get(self, gvk: GroupVersionKind, namespace: str, name: str) -> dict[str, Any]:
        def _get(**kwargs: Any) -> dict[str, Any]:
            return self._resource(gvk).get(name=name, namespace=namespace or None, **kwargs).to_dict()

        return await self._call("get", ObjectKey(gvk, namespace, name), _get)

    async def list(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        label_selector: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        selector = ",".join(f"{k}={v}" for k, v in sorted((label_selector or {}).items()))

        def _list(**kwargs: Any) -> list[dict[str, Any]]:
            result = self._resource(gvk).get(
                namespace=namespace or None,
                label_selector=selector or None,
                **kwargs,
            )
            return result.to_dict().get("items") or []

        return await self._call("list", ObjectKey(gvk, namespace, ""), _list)

    async def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        key = _key_of(obj)

        def _create(**kwargs: Any) -> dict[str, Any]:
            return (
                self._resource(key.gvk)
                .create(body=obj, namespace=key.namespace or None, **kwargs)
                .to_dict()
            )

        return await self._call("create", key, _create)

    async def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        key = _key_of(obj)

        def _update(**kwargs: Any) -> dict[str, Any]:
            return (
                self._resource(key.gvk)
                .replace(body=obj, name=key.name, namespace=key.namespace or None, **kwargs)
                .to_dict()
            )

        return await self._call("update", key, _update)

    async def delete(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        name: str,
        propagation_policy: PropagationPolicy,
        grace_period_seconds: int,
    ) -> None:
        body = {
            "apiVersion": "v1",
            "kind": "DeleteOptions",
            "propagationPolicy": PropagationPolicy(propagation_policy).value,
            "gracePeriodSeconds": grace_period_seconds,
        }

        def _delete(**kwargs: Any) -> None:
            self._resource(gvk).delete(name=name, namespace=namespace or None, body=body, **kwargs)

        await self._call("delete", ObjectKey(gvk, namespace, name), _delete)


class ClusterSecretLookup:
    """SecretLookup reading secrets of one namespace from a cluster."""

    def __init__(self, reader: ObjectReader, namespace: str):
        self._reader = reader
        self._namespace = namespace

    async def get(self, name: str) -> dict[str, Any] | None:
        try:
            return await self._reader.get(SECRET_GVK, self._namespace, name)
        except NotFoundError:
            return None
