import httpx
import pytest

from conftest import raft_config, vault_body
from vaultkeeper.errors import MissingDependencyError, TransientPlatformError, ValidationError
from vaultkeeper.models.vault import API_VERSION, KIND
from vaultkeeper.services.health_observer import HealthObserver
from vaultkeeper.services.reconciler import MISSING_STORAGE_MESSAGE, Reconciler


class HealthReplies:
    """Per-pod /v1/sys/health replies served through httpx.MockTransport."""

    def __init__(self, **replies):
        self.replies = replies
        self.calls = 0

    def __call__(self, request):
        self.calls += 1
        pod = request.url.host.split(".")[0]
        reply = self.replies.get(pod, {"standby": True})
        if isinstance(reply, Exception):
            raise reply
        return httpx.Response(200, json=reply)


def reconciler_for(cluster, health):
    client = httpx.Client(transport=httpx.MockTransport(health))
    return Reconciler(cluster, observer=HealthObserver(cluster, http_client=client), requeue_delay=7.0)


def add_vault(cluster, **spec):
    return cluster.add(vault_body(**spec))


def status_of(cluster, name="vault"):
    return cluster.get(API_VERSION, KIND, name, "default").get("status") or {}


def test_missing_vault_is_a_noop(cluster):
    result = reconciler_for(cluster, HealthReplies()).reconcile("default", "absent")
    assert not result.suspended
    assert cluster.writes == []


def test_full_pass_creates_everything(cluster):
    add_vault(cluster)
    health = HealthReplies(**{"vault-0": {"standby": False}})

    result = reconciler_for(cluster, health).reconcile("default", "vault")

    assert not result.suspended
    created = {(kind, name) for verb, kind, _, name in cluster.writes if verb == "create"}
    assert created == {
        ("Service", "vault"),
        ("Service", "vault-0"),
        ("Secret", "vault-tls"),
        ("ConfigMap", "vault-statsd-mapping"),
        ("Secret", "vault-raw-config"),
        ("StatefulSet", "vault"),
    }
    statefulset = cluster.get("apps/v1", "StatefulSet", "vault", "default")
    annotations = statefulset["spec"]["template"]["metadata"]["annotations"]
    assert annotations["vault.banzaicloud.io/tls-expiration-date"] != "0001-01-01T00:00:00Z"

    status = status_of(cluster)
    assert status["leader"] == "vault-0"
    assert status["conditions"] == [{"type": "Healthy", "status": "True", "error": ""}]


def test_second_pass_writes_nothing(cluster):
    add_vault(cluster, config=raft_config(), size=3, caNamespaces=["apps"], serviceMonitorEnabled=True,
              externalConfig={"policies": [{"name": "allow_secrets", "rules": "path \"secret/*\" {}"}]})
    cluster.namespaces.add("apps")
    health = HealthReplies(**{"vault-0": {"standby": False}})
    reconciler = reconciler_for(cluster, health)

    reconciler.reconcile("default", "vault")
    writes = len(cluster.writes)
    reconciler.reconcile("default", "vault")

    assert cluster.writes[writes:] == []


def test_configurer_and_monitor_are_deployed(cluster):
    add_vault(cluster, config=raft_config(), serviceMonitorEnabled=True,
              externalConfig={"auth": [{"type": "kubernetes"}]})
    reconciler_for(cluster, HealthReplies()).reconcile("default", "vault")

    assert cluster.get("apps/v1", "Deployment", "vault-configurer", "default") is not None
    assert cluster.get("v1", "Secret", "vault-configurer", "default") is not None
    assert cluster.get("v1", "Service", "vault-configurer", "default") is not None
    assert cluster.get("monitoring.coreos.com/v1", "ServiceMonitor", "vault", "default") is not None


def test_tls_disabled_skips_certificates(cluster):
    add_vault(cluster, config=raft_config(tls=False))
    reconciler_for(cluster, HealthReplies()).reconcile("default", "vault")

    assert cluster.get("v1", "Secret", "vault-tls", "default") is None
    statefulset = cluster.get("apps/v1", "StatefulSet", "vault", "default")
    annotations = statefulset["spec"]["template"]["metadata"]["annotations"]
    assert annotations["vault.banzaicloud.io/tls-expiration-date"] == "0001-01-01T00:00:00Z"


def test_existing_tls_secret_must_exist(cluster):
    add_vault(cluster, existingTlsSecretName="my-tls")
    with pytest.raises(TransientPlatformError):
        reconciler_for(cluster, HealthReplies()).reconcile("default", "vault")


def test_missing_storage_reports_once(cluster):
    add_vault(cluster, config={"listener": {"tcp": {}}})
    reconciler = reconciler_for(cluster, HealthReplies())

    with pytest.raises(MissingDependencyError):
        reconciler.reconcile("default", "vault")
    condition = status_of(cluster)["conditions"][0]
    assert condition["status"] == "False"
    assert condition["message"] == MISSING_STORAGE_MESSAGE
    writes = len(cluster.writes)

    with pytest.raises(MissingDependencyError):
        reconciler.reconcile("default", "vault")
    assert len(cluster.writes) == writes
    assert cluster.get("apps/v1", "StatefulSet", "vault", "default") is None


def test_replicas_without_ha_storage_are_rejected(cluster):
    add_vault(cluster, size=3)
    with pytest.raises(ValidationError):
        reconciler_for(cluster, HealthReplies()).reconcile("default", "vault")
    assert cluster.get("apps/v1", "StatefulSet", "vault", "default") is None


def test_invalid_spec_is_rejected(cluster):
    add_vault(cluster, size="many")
    with pytest.raises(ValidationError):
        reconciler_for(cluster, HealthReplies()).reconcile("default", "vault")


def test_load_balancer_without_address_suspends(cluster):
    add_vault(cluster, serviceType="LoadBalancer")
    reconciler = reconciler_for(cluster, HealthReplies())

    result = reconciler.reconcile("default", "vault")

    assert result.suspended
    assert result.requeue_after == 7.0
    assert cluster.get("apps/v1", "StatefulSet", "vault", "default") is None

    key = ("v1", "Service", "default", "vault")
    cluster.objects[key]["status"] = {"loadBalancer": {"ingress": [{"ip": "198.51.100.10"}]}}
    result = reconciler.reconcile("default", "vault")

    assert not result.suspended
    assert cluster.get("apps/v1", "StatefulSet", "vault", "default") is not None


def test_status_is_only_written_on_change(cluster):
    add_vault(cluster)
    health = HealthReplies(**{"vault-0": {"standby": False}})
    reconciler = reconciler_for(cluster, health)

    reconciler.reconcile("default", "vault")
    reconciler.reconcile("default", "vault")
    assert len(cluster.writes_of("status")) == 1

    health.replies["vault-0"] = httpx.ConnectError("connection refused")
    reconciler.reconcile("default", "vault")

    assert len(cluster.writes_of("status")) == 2
    status = status_of(cluster)
    assert status["leader"] == ""
    assert status["conditions"][0] == {"type": "Healthy", "status": "False", "error": "connection refused"}


def test_status_keeps_foreign_fields(cluster):
    body = vault_body()
    body["status"] = {"kopf": {"progress": {}}}
    cluster.add(body)

    reconciler_for(cluster, HealthReplies()).reconcile("default", "vault")

    assert status_of(cluster)["kopf"] == {"progress": {}}


def test_watched_secrets_roll_statefulset(cluster):
    add_vault(cluster, watchedSecretsLabels=[{"watch": "true"}])
    cluster.add({
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": "db", "namespace": "default", "labels": {"watch": "true"}},
        "data": {"password": "czNjcmV0"},
    })
    reconciler = reconciler_for(cluster, HealthReplies())
    reconciler.reconcile("default", "vault")

    def watched_sum():
        statefulset = cluster.get("apps/v1", "StatefulSet", "vault", "default")
        return statefulset["spec"]["template"]["metadata"]["annotations"]["vault.banzaicloud.io/watched-secrets-sum"]

    before = watched_sum()
    cluster.objects[("v1", "Secret", "default", "db")]["data"]["password"] = "b3RoZXI="
    reconciler.reconcile("default", "vault")

    assert watched_sum() != before
