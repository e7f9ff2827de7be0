import pytest

from conftest import make_vault, raft_config
from vaultkeeper.errors import ValidationError
from vaultkeeper.services.statefulset import statefulset_for_vault, unseal_command

RESTART = {
    "vault.banzaicloud.io/tls-expiration-date": "2030-01-01T00:00:00Z",
    "vault.banzaicloud.io/vault-config": "abc",
}


def build(vault, watched=None, service=None):
    return statefulset_for_vault(vault, watched or [], RESTART, service)


def containers_by_name(statefulset):
    return {c["name"]: c for c in statefulset["spec"]["template"]["spec"]["containers"]}


def test_more_replicas_need_ha_storage():
    with pytest.raises(ValidationError):
        build(make_vault(size=2))


def test_basic_statefulset():
    statefulset = build(make_vault())
    spec = statefulset["spec"]
    containers = containers_by_name(statefulset)

    assert spec["replicas"] == 1
    assert spec["serviceName"] == "vault"
    assert spec["podManagementPolicy"] == "Parallel"
    assert list(containers) == ["vault", "bank-vaults", "prometheus-exporter"]
    assert containers["vault"]["securityContext"] == {"capabilities": {"add": ["IPC_LOCK", "SETFCAP"]}}
    assert containers["vault"]["readinessProbe"]["httpGet"]["scheme"] == "HTTPS"
    assert spec["template"]["spec"]["initContainers"][0]["name"] == "config-templating"
    assert "volumeClaimTemplates" not in spec


def test_template_annotations_carry_restart_triggers():
    annotations = build(make_vault(annotations={"common": "1"}))["spec"]["template"]["metadata"]["annotations"]
    assert annotations["vault.banzaicloud.io/vault-config"] == "abc"
    assert annotations["vault.banzaicloud.io/tls-expiration-date"] == "2030-01-01T00:00:00Z"
    assert annotations["prometheus.io/port"] == "9102"
    assert annotations["common"] == "1"


def test_volumes_are_deduplicated_and_sorted():
    vault = make_vault(volumes=[
        {"name": "vault-tls", "secret": {"secretName": "custom-tls"}},
        {"name": "extra", "emptyDir": {}},
    ])
    volumes = build(vault)["spec"]["template"]["spec"]["volumes"]
    names = [v["name"] for v in volumes]

    assert names == sorted(names)
    assert len(names) == len(set(names))
    assert next(v for v in volumes if v["name"] == "vault-tls")["secret"]["secretName"] == "custom-tls"


def test_tls_disabled_has_no_tls_volume():
    statefulset = build(make_vault(config=raft_config(tls=False)))
    names = [v["name"] for v in statefulset["spec"]["template"]["spec"]["volumes"]]
    assert "vault-tls" not in names
    env = containers_by_name(statefulset)["bank-vaults"]["env"]
    assert {"name": "VAULT_ADDR", "value": "http://127.0.0.1:8200"} in env


def test_raft_is_ordered_and_joins_leader():
    vault = make_vault(config=raft_config(), size=3)
    statefulset = build(vault)
    assert statefulset["spec"]["podManagementPolicy"] == "OrderedReady"
    assert unseal_command(vault) == [
        "bank-vaults", "unseal", "--init",
        "--raft", "--raft-leader-address", "https://vault:8200",
    ]


def test_raft_follower_and_auto_unseal():
    config = raft_config()
    config["seal"] = {"awskms": {}}
    vault = make_vault(config=config, raftLeaderAddress="vault.primary", raftLeaderApiSchemeOverride="http")
    assert unseal_command(vault) == [
        "bank-vaults", "unseal", "--init", "--auto",
        "--raft", "--raft-leader-address", "http://vault.primary:8200", "--raft-secondary",
    ]


def test_raft_ha_storage_flag():
    vault = make_vault(config={"storage": {"s3": {}}, "ha_storage": {"raft": {}}})
    assert unseal_command(vault)[-1] == "--raft-ha-storage"


def test_mlock_disabled_drops_capabilities():
    config = raft_config()
    config["disable_mlock"] = True
    containers = containers_by_name(build(make_vault(config=config)))
    assert containers["vault"]["securityContext"] == {}


def test_container_overlay_overrides_vault_container():
    vault = make_vault(vaultContainerSpec={"image": "hashicorp/vault:1.15.0", "workingDir": "/tmp"})
    vault_container = containers_by_name(build(vault))["vault"]
    assert vault_container["image"] == "hashicorp/vault:1.15.0"
    assert vault_container["workingDir"] == "/tmp"


def test_pod_overlay_overrides_generated_fields():
    vault = make_vault(
        vaultPodSpec={
            "serviceAccountName": "custom-sa",
            "securityContext": {"fsGroup": 2000},
            "priorityClassName": "critical",
        },
    )
    pod_spec = build(vault)["spec"]["template"]["spec"]
    assert pod_spec["serviceAccountName"] == "custom-sa"
    assert pod_spec["securityContext"] == {"fsGroup": 2000}
    assert pod_spec["priorityClassName"] == "critical"


def test_bank_vaults_mounts_dedupe_hsm_socket():
    vault = make_vault(
        unsealConfig={"hsm": {"daemon": True}},
        bankVaultsVolumeMounts=[{"name": "hsm-pcscd", "mountPath": "/custom"}],
    )
    mounts = containers_by_name(build(vault))["bank-vaults"]["volumeMounts"]
    names = [m["name"] for m in mounts]

    assert names == sorted(set(names))
    assert {"name": "hsm-pcscd", "mountPath": "/custom"} in mounts


def test_optional_sidecars():
    vault = make_vault(
        statsdDisabled=True,
        fluentdEnabled=True,
        veleroEnabled=True,
        unsealConfig={"hsm": {"daemon": True}},
    )
    statefulset = build(vault)
    names = list(containers_by_name(statefulset))
    assert names == ["vault", "bank-vaults", "auditlog-exporter", "velero-fsfreeze", "bank-vaults-hsm-pcscd"]
    annotations = statefulset["spec"]["template"]["metadata"]["annotations"]
    assert annotations["pre.hook.backup.velero.io/container"] == "velero-fsfreeze"


def test_watched_secrets_roll_pods():
    watched = [{"metadata": {"name": "db"}, "data": {"password": "czNjcmV0"}}]
    annotations = build(make_vault(), watched=watched)["spec"]["template"]["metadata"]["annotations"]
    assert "vault.banzaicloud.io/watched-secrets-sum" in annotations


def test_cluster_addr_follows_load_balancer():
    vault = make_vault(config=raft_config(), raftLeaderAddress="vault.primary")
    service = {"spec": {"loadBalancerIP": "1.2.3.4"}}
    env = containers_by_name(build(vault, service=service))["vault"]["env"]
    assert {"name": "VAULT_CLUSTER_ADDR", "value": "https://1.2.3.4:8201"} in env
