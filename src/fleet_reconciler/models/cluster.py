"""Cluster domain models."""

from enum import Enum


class ClusterRole(str, Enum):
    """Logical role of a cluster in the fleet.

    Selects the type set (kinds and codec) valid for a client handle.
    """

    MANAGEMENT = "Management"
    FLEET_MEMBER = "FleetMember"
    TENANT = "Tenant"
    AUXILIARY = "Auxiliary"


class PropagationPolicy(str, Enum):
    """Deletion propagation policy for dependents of a deleted object."""

    FOREGROUND = "Foreground"
    BACKGROUND = "Background"
