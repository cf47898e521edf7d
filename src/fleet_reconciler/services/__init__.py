"""Reconciliation services: applier, managed resource handoff, scoped access."""

from .access_issuer import (
    CREDENTIAL_MERGE_FUNCS,
    AccessDeployer,
    ScopedAccessIssuer,
    merge_credential_secret,
)
from .applier import (
    DEFAULT_MERGE_FUNCS,
    Applier,
    ApplierOptions,
    MergeFunc,
    has_changes,
    merge_objects,
    merge_service,
    merge_service_account,
)
from .managed_resources import (
    ManagedResourceHandoff,
    ManagedResourceRegistry,
    entry_key,
    pack_entries,
    wait_until_healthy,
)

__all__ = [
    # Applier
    "Applier",
    "ApplierOptions",
    "DEFAULT_MERGE_FUNCS",
    "MergeFunc",
    "has_changes",
    "merge_objects",
    "merge_service",
    "merge_service_account",
    # Managed resources
    "ManagedResourceHandoff",
    "ManagedResourceRegistry",
    "entry_key",
    "pack_entries",
    "wait_until_healthy",
    # Scoped access
    "AccessDeployer",
    "CREDENTIAL_MERGE_FUNCS",
    "ScopedAccessIssuer",
    "merge_credential_secret",
]
