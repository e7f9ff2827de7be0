""" Copies the CA certificate of a Vault into other namespaces.
"""

import copy
import logging

from kubernetes.client.exceptions import ApiException

from vaultkeeper.errors import TransientPlatformError
from vaultkeeper.services.apply import LAST_APPLIED_ANNOTATION

logger = logging.getLogger(__name__)

PRIVATE_KEYS = ("ca.key", "server.crt", "server.key", "tls.crt", "tls.key")


def ca_only(secret):
    """ Strip everything but the CA certificate from a TLS secret.
    """
    secret = copy.deepcopy(secret)
    data = secret.get("data") or {}
    if secret.get("type") == "kubernetes.io/tls":
        secret["type"] = "Opaque"
    for key in PRIVATE_KEYS:
        data.pop(key, None)
    secret["data"] = data
    secret.pop("stringData", None)
    return secret


def _is_terminating(namespace):
    metadata = namespace.get("metadata") or {}
    status = namespace.get("status") or {}
    return bool(metadata.get("deletionTimestamp")) or status.get("phase") == "Terminating"


class CADistributor:
    """ Replicates a CA-only copy of the TLS secret to caNamespaces.
    """

    def __init__(self, cluster, applier, log=None):
        self.cluster = cluster
        self.applier = applier
        self.log = log or logger

    def target_namespaces(self, vault):
        requested = vault.spec.caNamespaces
        if requested and requested[0] == "*":
            try:
                namespaces = self.cluster.list("v1", "Namespace")
            except ApiException as e:
                raise TransientPlatformError(f"failed to list namespaces: {e}") from e
            return [
                ns["metadata"]["name"] for ns in namespaces if not _is_terminating(ns)
            ]
        return list(requested)

    def distribute(self, vault, secret_name):
        try:
            current = self.cluster.get("v1", "Secret", secret_name, vault.namespace)
        except ApiException as e:
            raise TransientPlatformError(f"failed to query current secret for vault: {e}") from e
        if current is None:
            raise TransientPlatformError(
                f"failed to query current secret for vault: {vault.namespace}/{secret_name} not found"
            )

        template = ca_only(current)
        template.pop("status", None)
        for namespace in self.target_namespaces(vault):
            if namespace == vault.namespace:
                continue
            secret = copy.deepcopy(template)
            metadata = secret["metadata"]
            metadata["namespace"] = namespace
            for field in ("resourceVersion", "uid", "ownerReferences", "creationTimestamp",
                          "managedFields"):
                metadata.pop(field, None)
            # The source's last-applied copy still holds the private keys
            (metadata.get("annotations") or {}).pop(LAST_APPLIED_ANNOTATION, None)
            try:
                self.applier.apply(secret)
            except ApiException as e:
                if e.status == 404:
                    self.log.debug(
                        f"Can't distribute CA secret, namespace {namespace} doesn't exist"
                    )
                    continue
                raise TransientPlatformError(
                    f"failed to create CA secret for vault in namespace {namespace}: {e}"
                ) from e
