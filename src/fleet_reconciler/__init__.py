"""Declarative manifest reconciliation and managed resource handoff.

Applies desired objects to fleet clusters, packages objects into managed
resource bundles for a remote agent, and issues the scoped credentials
the agent and its watchdogs authenticate with.
"""

__version__ = "0.1.0"
