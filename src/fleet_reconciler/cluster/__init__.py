"""Cluster type registry and client capabilities."""

from .client import (
    ClusterClient,
    ClusterSecretLookup,
    ObjectClient,
    ObjectReader,
    ObjectWriter,
    SecretLookup,
    request_deadline,
)
from .scheme import (
    DEFAULT_ROLE_KINDS,
    TypeRegistry,
    TypeSet,
    YAMLCodec,
    build_type_registry,
)

__all__ = [
    # Type registry
    "DEFAULT_ROLE_KINDS",
    "TypeRegistry",
    "TypeSet",
    "YAMLCodec",
    "build_type_registry",
    # Client capabilities
    "ClusterClient",
    "ClusterSecretLookup",
    "ObjectClient",
    "ObjectReader",
    "ObjectWriter",
    "SecretLookup",
    "request_deadline",
]
