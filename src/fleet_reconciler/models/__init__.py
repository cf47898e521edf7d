"""Data models for fleet reconciliation.

Conventions:
- Field names: lowercase snake_case
- Object identity: (GroupVersionKind, namespace, name)
- Wire shapes (camelCase) are rendered explicitly by to_manifest()/to_dict()
"""

# Base
from .base import FleetBaseModel

# Cluster roles and deletion policy
from .cluster import ClusterRole, PropagationPolicy

# Resource objects
from .manifest import GroupKind, GroupVersionKind, ManifestObject, ObjectKey

# Managed resource bundles
from .managed_resource import (
    MANAGED_RESOURCE_KIND,
    BundleCondition,
    BundlePayload,
    BundlePhase,
    ManagedResourceBundle,
    ManagedResourceStatus,
)

# Scoped access
from .access import (
    ANNOTATION_TOKEN_RENEW_TIMESTAMP,
    CLUSTER_ROLE_BINDING_GVK,
    CLUSTER_ROLE_GVK,
    COORDINATION_API_GROUP,
    DATA_KEY_KUBECONFIG,
    LABEL_PURPOSE,
    LABEL_PURPOSE_TOKEN_REQUESTOR,
    ROLE_BINDING_GVK,
    ROLE_GVK,
    SECRET_GVK,
    AccessValues,
    PolicyRule,
    RBACGrant,
    ScopedAccessCredential,
    ServiceAccountSubject,
    render_kubeconfig,
    set_kubeconfig_token,
    token_from_kubeconfig,
)

__all__ = [
    # Base
    "FleetBaseModel",
    # Cluster
    "ClusterRole",
    "PropagationPolicy",
    # Manifest
    "GroupKind",
    "GroupVersionKind",
    "ManifestObject",
    "ObjectKey",
    # Managed resources
    "MANAGED_RESOURCE_KIND",
    "BundleCondition",
    "BundlePayload",
    "BundlePhase",
    "ManagedResourceBundle",
    "ManagedResourceStatus",
    # Access
    "ANNOTATION_TOKEN_RENEW_TIMESTAMP",
    "CLUSTER_ROLE_BINDING_GVK",
    "CLUSTER_ROLE_GVK",
    "COORDINATION_API_GROUP",
    "DATA_KEY_KUBECONFIG",
    "LABEL_PURPOSE",
    "LABEL_PURPOSE_TOKEN_REQUESTOR",
    "ROLE_BINDING_GVK",
    "ROLE_GVK",
    "SECRET_GVK",
    "AccessValues",
    "PolicyRule",
    "RBACGrant",
    "ScopedAccessCredential",
    "ServiceAccountSubject",
    "render_kubeconfig",
    "set_kubeconfig_token",
    "token_from_kubeconfig",
]
