"""Scoped access issuance for the dependency watchdog.

Issuing access writes a kubeconfig credential secret into the
management cluster namespace of a fleet member, then hands a Role and
RoleBinding on the member's coordination leases to the remote agent as a
managed resource bundle. The credential is always written before the
grant that depends on it.
"""

import base64
import binascii
import copy
from typing import Any

from ..cluster import SecretLookup
from ..config import AccessSettings, get_settings
from ..errors import MissingCAError
from ..models import (
    ANNOTATION_TOKEN_RENEW_TIMESTAMP,
    COORDINATION_API_GROUP,
    DATA_KEY_KUBECONFIG,
    LABEL_PURPOSE,
    LABEL_PURPOSE_TOKEN_REQUESTOR,
    SECRET_GVK,
    AccessValues,
    GroupKind,
    ManifestObject,
    PolicyRule,
    RBACGrant,
    ScopedAccessCredential,
    set_kubeconfig_token,
    token_from_kubeconfig,
)
from ..observability import ReconcileContext, get_logger
from .applier import Applier, ApplierOptions
from .managed_resources import ManagedResourceHandoff, ManagedResourceRegistry

logger = get_logger(__name__)


def merge_credential_secret(desired: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    """Keep the bearer token the token side channel wrote into a credential.

    Secrets without the token-requestor purpose label are replaced as is.
    """
    merged = copy.deepcopy(desired)
    labels = (merged.get("metadata") or {}).get("labels") or {}
    if labels.get(LABEL_PURPOSE) != LABEL_PURPOSE_TOKEN_REQUESTOR:
        return merged

    current_raw = (current.get("data") or {}).get(DATA_KEY_KUBECONFIG)
    desired_raw = (merged.get("data") or {}).get(DATA_KEY_KUBECONFIG)
    if not current_raw or not desired_raw:
        return merged

    token = token_from_kubeconfig(base64.b64decode(current_raw))
    kubeconfig = base64.b64decode(desired_raw)
    if token and not token_from_kubeconfig(kubeconfig):
        merged["data"][DATA_KEY_KUBECONFIG] = base64.b64encode(
            set_kubeconfig_token(kubeconfig, token)
        ).decode()

    renewed = ((current.get("metadata") or {}).get("annotations") or {}).get(
        ANNOTATION_TOKEN_RENEW_TIMESTAMP
    )
    if renewed:
        merged["metadata"].setdefault("annotations", {})[ANNOTATION_TOKEN_RENEW_TIMESTAMP] = renewed
    return merged


CREDENTIAL_MERGE_FUNCS = {GroupKind("", "Secret"): merge_credential_secret}


class ScopedAccessIssuer:
    """Issues and revokes watchdog access for fleet member namespaces.

    The applier and handoff target the management cluster; the registry
    encodes for the fleet member role, where the grant is applied by the
    remote agent. secrets is the secrets manager holding the cluster CA.
    """

    def __init__(
        self,
        applier: Applier,
        handoff: ManagedResourceHandoff,
        secrets: SecretLookup,
        registry: ManagedResourceRegistry,
        settings: AccessSettings | None = None,
    ):
        self.applier = applier
        self.handoff = handoff
        self.secrets = secrets
        self.registry = registry
        self.settings = settings or get_settings().access
        self.options = ApplierOptions().with_merge_funcs(CREDENTIAL_MERGE_FUNCS)

    async def _ca_bundle(self) -> bytes:
        name = self.settings.ca_secret_name
        secret = await self.secrets.get(name)
        if secret is None:
            raise MissingCAError(f"CA secret {name!r} not found")

        raw = (secret.get("data") or {}).get(self.settings.ca_bundle_data_key)
        if not raw:
            raise MissingCAError(
                f"CA secret {name!r} has no {self.settings.ca_bundle_data_key!r} entry"
            )
        try:
            return base64.b64decode(raw, validate=True)
        except binascii.Error as e:
            raise MissingCAError(f"CA secret {name!r} holds an invalid bundle") from e

    def credential(self, namespace: str, values: AccessValues, ca_bundle: bytes) -> ScopedAccessCredential:
        return ScopedAccessCredential(
            secret_name=self.settings.credential_secret_name,
            namespace=namespace,
            ca_secret_name=self.settings.ca_secret_name,
            server=values.server_in_cluster,
            ca_bundle=ca_bundle,
            service_account_name=self.settings.service_account_name,
            service_account_namespace=self.settings.service_account_namespace,
        )

    def rules(self) -> list[PolicyRule]:
        """Access to the watchdog's own lock lease and nothing else."""
        return [
            PolicyRule(
                api_groups=[COORDINATION_API_GROUP],
                resources=["leases"],
                resource_names=[self.settings.lock_object_name],
                verbs=["get", "watch", "update"],
            ),
        ]

    def grant(self, credential: ScopedAccessCredential) -> RBACGrant:
        return RBACGrant.for_credential(
            self.settings.rbac_name,
            self.settings.lease_namespace,
            self.rules(),
            credential,
        )

    async def issue_access(self, namespace: str, values: AccessValues) -> None:
        """Write the credential secret, then hand off the lease grant.

        Raises:
            MissingCAError: If the CA secret is absent
        """
        ca_bundle = await self._ca_bundle()

        credential = self.credential(namespace, values, ca_bundle)
        await self.applier.apply(credential.to_manifest(), self.options)

        payload = self.registry.serialize(*self.grant(credential).objects())
        await self.handoff.create_for_target(
            namespace,
            self.settings.bundle_name,
            self.settings.bundle_class,
            keep_objects=False,
            payload=payload,
        )

        logger.info(
            "Scoped access issued",
            namespace=namespace,
            secret=credential.secret_name,
            bundle=self.settings.bundle_name,
        )

    async def destroy(self, namespace: str) -> None:
        """Delete the credential secret, then the grant bundle.

        Both deletions are idempotent; the first error is raised as is.
        """
        await self.applier.delete(
            ManifestObject(
                gvk=SECRET_GVK,
                namespace=namespace,
                name=self.settings.credential_secret_name,
            )
        )
        await self.handoff.delete_bundle(namespace, self.settings.bundle_name)
        logger.info("Scoped access revoked", namespace=namespace)


class AccessDeployer:
    """Component deployer for the watchdog's access in one namespace."""

    def __init__(self, issuer: ScopedAccessIssuer, namespace: str, values: AccessValues):
        self.issuer = issuer
        self.namespace = namespace
        self.values = values

    async def deploy(self) -> None:
        async with ReconcileContext(
            namespace=self.namespace, component=self.issuer.settings.component_name
        ):
            await self.issuer.issue_access(self.namespace, self.values)

    async def destroy(self) -> None:
        async with ReconcileContext(
            namespace=self.namespace, component=self.issuer.settings.component_name
        ):
            await self.issuer.destroy(self.namespace)
