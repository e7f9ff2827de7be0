""" Probes every Vault replica to find the active leader.
"""

import logging

import httpx
from kubernetes.client.exceptions import ApiException

from vaultkeeper.errors import TransientPlatformError
from vaultkeeper.services.cluster import label_selector

logger = logging.getLogger(__name__)

# Report every state as 2xx so only transport failures end the loop.
HEALTH_PARAMS = {
    "uninitcode": "299",
    "sealedcode": "299",
    "standbycode": "299",
    "drsecondarycode": "299",
    "performancestandbycode": "299",
}


class Observation:
    """ Result of one observation pass.
    """

    def __init__(self, nodes, leader="", error=""):
        self.nodes = nodes
        self.leader = leader
        self.error = error

    @property
    def healthy(self):
        return bool(self.leader) and not self.error

    def __repr__(self):
        return f"Observation(nodes={self.nodes!r}, leader={self.leader!r}, error={self.error!r})"


def new_http_client(timeout=2.0):
    """ Client for health probes: certificates are issued by the Vault's own CA.
    """
    return httpx.Client(verify=False, timeout=timeout)


class HealthObserver:
    """ Sequentially probes /v1/sys/health on each replica.
    """

    def __init__(self, cluster, http_client=None, log=None):
        self.cluster = cluster
        self.http = http_client or new_http_client()
        self.log = log or logger

    def pod_names(self, vault):
        try:
            pods = self.cluster.list(
                "v1", "Pod",
                namespace=vault.namespace,
                label_selector=label_selector(vault.labels_for_vault()),
            )
        except ApiException as e:
            raise TransientPlatformError(f"failed to list pods: {e}") from e
        return sorted(pod["metadata"]["name"] for pod in pods)

    def probe(self, vault, pod_name):
        """ Return the decoded health reply, raising on any failure.
        """
        url = (
            f"{vault.spec.get_api_scheme()}://{pod_name}.{vault.namespace}:8200"
            "/v1/sys/health"
        )
        response = self.http.get(url, params=HEALTH_PARAMS)
        response.raise_for_status()
        health = response.json()
        if not isinstance(health, dict):
            raise ValueError(f"unexpected health reply: {health!r}")
        return health

    def observe(self, vault):
        nodes = self.pod_names(vault)
        leader = ""
        error = ""
        for i in range(vault.spec.size):
            pod_name = f"{vault.name}-{i}"
            try:
                health = self.probe(vault, pod_name)
            except (httpx.HTTPError, ValueError) as e:
                error = str(e) or type(e).__name__
                self.log.debug(f"Health probe of {vault.namespace}/{pod_name} failed: {error}")
                break
            if not health.get("standby", False):
                leader = pod_name
        return Observation(nodes, leader, error)
