""" StatefulSet running the Vault server with its unseal and exporter sidecars.
"""

import logging

from vaultkeeper.errors import ValidationError
from vaultkeeper.services.merge import dedupe_by_name, merge_container, merge_pod_spec
from vaultkeeper.services.vault_resources import (
    common_annotations,
    credentials_env,
    credentials_volume_mounts,
    credentials_volumes,
    hsm_volume_mounts,
    hsm_volumes,
    load_balancer_ingress_points,
    object_meta,
    pod_security_context,
    resources_for,
    service_ports,
    tls_env,
    tls_volume_mounts,
    tls_volumes,
    vault_volume_mounts,
    with_prometheus_annotations,
    with_vault_annotations,
    with_vault_labels,
    with_velero_annotations,
    with_watched_secrets,
)

logger = logging.getLogger(__name__)

POD_NAME_ENV = {"valueFrom": {"fieldRef": {"fieldPath": "metadata.name"}}}


def unseal_command(vault):
    """ bank-vaults unseal invocation, including raft join flags.
    """
    spec = vault.spec
    command = ["bank-vaults", "unseal", "--init"]
    if spec.is_auto_unseal():
        command.append("--auto")

    if spec.is_raft_storage():
        leader_address = vault.name
        scheme = spec.get_api_scheme()
        if spec.is_raft_bootstrap_follower():
            leader_address = spec.raftLeaderAddress
            scheme = spec.raftLeaderApiSchemeOverride or scheme
        command += ["--raft", "--raft-leader-address", f"{scheme}://{leader_address}:8200"]
        if spec.is_raft_bootstrap_follower():
            command.append("--raft-secondary")
    elif spec.is_raft_ha_storage():
        command.append("--raft-ha-storage")
    return command


def cluster_addr_env(vault, service):
    """ Bind cluster_addr to the LB address in multi-cluster raft setups.
    """
    points = load_balancer_ingress_points(service)
    if not points or not vault.spec.raftLeaderAddress:
        return []
    address = points[-1]
    return [
        {"name": "VAULT_CLUSTER_ADDR", "value": f"https://{address}:8201"},
        {"name": "VAULT_API_ADDR", "value": f"{vault.spec.get_api_scheme()}://{address}:8200"},
    ]


def container_security_context(vault):
    if vault.spec.is_mlock_disabled():
        return {}
    return {"capabilities": {"add": ["IPC_LOCK", "SETFCAP"]}}


def _http_probe(vault, path):
    return {
        "httpGet": {
            "scheme": vault.spec.get_api_scheme().upper(),
            "port": vault.spec.get_api_port_name(),
            "path": path,
        }
    }


def _affinity(vault):
    if vault.spec.affinity is not None:
        return vault.spec.affinity
    affinity = {}
    if vault.spec.podAntiAffinity:
        affinity["podAntiAffinity"] = {
            "requiredDuringSchedulingIgnoredDuringExecution": [{
                "labelSelector": {"matchLabels": vault.labels_for_vault()},
                "topologyKey": vault.spec.podAntiAffinity,
            }]
        }
    if vault.spec.nodeAffinity:
        affinity["nodeAffinity"] = vault.spec.nodeAffinity
    return affinity


def _sidecar_containers(vault):
    spec = vault.spec
    containers = []
    if spec.is_fluentd_enabled():
        containers.append({
            "name": "auditlog-exporter",
            "image": spec.fluentdImage,
            "imagePullPolicy": "IfNotPresent",
            "volumeMounts": [
                {"name": "vault-auditlogs", "mountPath": "/vault/logs"},
                {"name": "fluentd-config", "mountPath": spec.get_fluentd_conf_mount_path()},
            ] + credentials_volume_mounts(vault),
            "resources": resources_for(vault, "fluentd"),
            "env": list(spec.sidecarEnvsConfig),
        })
    if not spec.is_statsd_disabled():
        containers.append({
            "name": "prometheus-exporter",
            "image": spec.statsdImage,
            "imagePullPolicy": "IfNotPresent",
            "args": ["--statsd.mapping-config=/tmp/statsd-mapping.conf"],
            "ports": [
                {"name": "statsd", "containerPort": 9125, "protocol": "UDP"},
                {"name": "prometheus", "containerPort": 9102, "protocol": "TCP"},
            ],
            "volumeMounts": [{"name": "statsd-mapping", "mountPath": "/tmp/"}],
            "resources": resources_for(vault, "prometheusExporter"),
            "env": list(spec.sidecarEnvsConfig),
        })
    if spec.veleroEnabled:
        containers.append({
            "name": "velero-fsfreeze",
            "image": spec.veleroFsfreezeImage,
            "imagePullPolicy": "IfNotPresent",
            "command": ["/bin/bash", "-c", "sleep infinity"],
            "volumeMounts": vault_volume_mounts(vault, []),
            "securityContext": {"privileged": True},
            "resources": {
                "requests": {"cpu": "50m", "memory": "32Mi"},
                "limits": {"cpu": "50m", "memory": "32Mi"},
            },
        })
    if spec.unsealConfig.hsm_daemon_needed():
        containers.append({
            "name": "bank-vaults-hsm-pcscd",
            "image": spec.get_bank_vaults_image(),
            "imagePullPolicy": "IfNotPresent",
            "command": ["pcscd-entrypoint.sh"],
            "volumeMounts": hsm_volume_mounts(vault),
            "resources": resources_for(vault, "hsmDaemon"),
            "securityContext": {"privileged": True, "runAsUser": 0},
        })
    return containers


def _volumes(vault):
    spec = vault.spec
    volumes = [
        {"name": "vault-raw-config", "secret": {"secretName": f"{vault.name}-raw-config"}},
        {"name": "vault-config", "emptyDir": {"medium": "Memory", "sizeLimit": "1Mi"}},
    ]
    volumes += credentials_volumes(vault) + tls_volumes(vault)
    if spec.is_fluentd_enabled():
        volumes += [
            {"name": "vault-auditlogs", "emptyDir": {}},
            {"name": "fluentd-config", "configMap": {"name": f"{vault.name}-fluentd-config"}},
        ]
    if not spec.is_statsd_disabled():
        volumes.append(
            {"name": "statsd-mapping", "configMap": {"name": f"{vault.name}-statsd-mapping"}}
        )
    volumes += hsm_volumes(vault)
    return dedupe_by_name(volumes, spec.volumes)


def statefulset_for_vault(vault, watched_secrets, restart_annotations, service):
    """ Build the Vault StatefulSet.

    Args:
        vault: parsed Vault resource
        watched_secrets: secrets whose content change must roll the pods
        restart_annotations: tls-expiration-date and vault-config hash
        service: live primary Service, for LB addresses
    """
    spec = vault.spec
    if spec.size > 1 and not spec.has_ha_storage():
        raise ValidationError("more than 1 replicas are not supported without HA storage backend")

    labels = vault.labels_for_vault()
    mounts = [{"name": "vault-config", "mountPath": spec.get_config_path()}]
    mounts += credentials_volume_mounts(vault) + tls_volume_mounts(vault)
    if spec.is_fluentd_enabled():
        mounts.append({"name": "vault-auditlogs", "mountPath": "/vault/logs"})

    _, container_ports = service_ports(vault)
    pod_name_env = [{"name": "VAULT_K8S_POD_NAME", **POD_NAME_ENV}]
    vault_env = pod_name_env + spec.get_secret_init_envs()

    vault_container = {
        "name": "vault",
        "image": spec.image,
        "imagePullPolicy": "IfNotPresent",
        "args": ["server"],
        "ports": container_ports,
        "env": vault_env + credentials_env(vault) + cluster_addr_env(vault, service),
        "securityContext": container_security_context(vault),
        "startupProbe": {
            **_http_probe(vault, "/v1/sys/init"),
            "periodSeconds": 10,
            "failureThreshold": 18,
        },
        "livenessProbe": _http_probe(vault, "/v1/sys/health?standbyok=true"),
        "readinessProbe": {
            **_http_probe(
                vault, "/v1/sys/health?standbyok=true&perfstandbyok=true&drsecondarycode=299"
            ),
            "periodSeconds": 5,
            "failureThreshold": 2,
        },
        "volumeMounts": vault_volume_mounts(vault, mounts),
        "resources": resources_for(vault, "vault"),
    }

    bank_vaults_mounts = credentials_volume_mounts(vault) + tls_volume_mounts(vault)
    bank_vaults_container = {
        "name": "bank-vaults",
        "image": spec.get_bank_vaults_image(),
        "imagePullPolicy": "IfNotPresent",
        "command": unseal_command(vault),
        "args": spec.unsealConfig.to_args(vault),
        "env": (
            [{"name": "POD_NAME", **POD_NAME_ENV}]
            + list(spec.envsConfig)
            + credentials_env(vault)
            + tls_env(vault, localhost=True)
            + list(spec.sidecarEnvsConfig)
        ),
        "ports": [{"name": "metrics", "containerPort": 9091, "protocol": "TCP"}],
        "volumeMounts": dedupe_by_name(
            bank_vaults_mounts + hsm_volume_mounts(vault), spec.bankVaultsVolumeMounts
        ),
        "resources": resources_for(vault, "bankVaults"),
    }

    init_container = {
        "name": "config-templating",
        "image": spec.get_bank_vaults_image(),
        "imagePullPolicy": "IfNotPresent",
        "command": [
            "template",
            "-template",
            f"/tmp/vault-config.json:{spec.get_config_path()}/vault.json",
        ],
        "env": [{"name": "POD_NAME", **POD_NAME_ENV}]
        + spec.get_secret_init_envs()
        + credentials_env(vault),
        "volumeMounts": vault_volume_mounts(
            vault, mounts + [{"name": "vault-raw-config", "mountPath": "/tmp"}]
        ),
        "resources": resources_for(vault, "vault"),
    }

    containers = [vault_container, bank_vaults_container] + _sidecar_containers(vault)
    containers += spec.vaultContainers

    pod_spec = {
        "serviceAccountName": spec.get_service_account(),
        "automountServiceAccountToken": True,
        "initContainers": [init_container] + list(spec.vaultInitContainers),
        "containers": containers,
        "volumes": _volumes(vault),
        "securityContext": pod_security_context(vault),
    }
    affinity = _affinity(vault)
    if affinity:
        pod_spec["affinity"] = affinity
    if spec.nodeSelector:
        pod_spec["nodeSelector"] = spec.nodeSelector
    if spec.tolerations:
        pod_spec["tolerations"] = spec.tolerations

    pod_spec = merge_pod_spec(pod_spec, spec.vaultPodSpec)
    pod_spec["containers"][0] = merge_container(pod_spec["containers"][0], spec.vaultContainerSpec)

    template_annotations = common_annotations(vault)
    template_annotations = with_vault_annotations(vault, template_annotations)
    template_annotations = with_prometheus_annotations("9102", template_annotations)
    template_annotations = with_velero_annotations(vault, template_annotations)
    template_annotations = with_watched_secrets(watched_secrets, template_annotations)
    template_annotations = {**template_annotations, **restart_annotations}

    ordered = spec.is_raft_storage() or spec.is_raft_ha_storage()
    statefulset_spec = {
        "replicas": spec.size,
        "updateStrategy": {"type": "RollingUpdate", "rollingUpdate": {"partition": 0}},
        "podManagementPolicy": "OrderedReady" if ordered else "Parallel",
        "serviceName": vault.name,
        "selector": {"matchLabels": labels},
        "template": {
            "metadata": {
                "labels": with_vault_labels(vault, labels),
                "annotations": template_annotations,
            },
            "spec": pod_spec,
        },
    }
    if spec.volumeClaimTemplates:
        statefulset_spec["volumeClaimTemplates"] = spec.volumeClaimTemplates

    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": object_meta(
            vault,
            vault.name,
            with_vault_labels(vault, labels),
            with_vault_annotations(vault, common_annotations(vault)),
        ),
        "spec": statefulset_spec,
    }
