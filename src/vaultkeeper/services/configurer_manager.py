""" Configurer deployment: a bank-vaults pod that applies externalConfig to Vault.
"""

import logging

from kubernetes.client.exceptions import ApiException

from vaultkeeper.errors import TransientPlatformError
from vaultkeeper.services.cluster import label_selector
from vaultkeeper.services.merge import fill_pod_spec
from vaultkeeper.services.vault_resources import (
    CONFIGURER_CONFIG_FILE,
    CONFIGURER_CONFIG_FILES,
    credentials_env,
    credentials_volume_mounts,
    credentials_volumes,
    encode_data,
    hsm_volume_mounts,
    hsm_volumes,
    object_meta,
    pod_security_context,
    resources_for,
    tls_env,
    tls_volume_mounts,
    tls_volumes,
    with_configurer_annotations,
    with_configurer_labels,
    with_prometheus_annotations,
)

logger = logging.getLogger(__name__)


def configurer_name(vault):
    return f"{vault.name}-configurer"


def secret_for_configurer(vault):
    labels = with_configurer_labels(vault, vault.labels_for_configurer())
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": object_meta(vault, configurer_name(vault), labels),
        "type": "Opaque",
        "data": encode_data({CONFIGURER_CONFIG_FILE: vault.external_config_json()}),
    }


def service_for_configurer(vault):
    labels = vault.labels_for_configurer()
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": object_meta(
            vault,
            configurer_name(vault),
            with_configurer_labels(vault, labels),
            with_configurer_annotations(vault, {}),
        ),
        "spec": {
            "type": "ClusterIP",
            "selector": labels,
            "ports": [{"name": "metrics", "port": 9091}],
        },
    }


def _config_sources(kind, items):
    """ Volumes, mounts and --vault-config-file args for labelled config objects.
    """
    volumes, mounts, args = [], [], []
    for item in sorted(items, key=lambda i: i["metadata"]["name"]):
        name = item["metadata"]["name"]
        data = item.get("data") or {}
        file_name = next((f for f in CONFIGURER_CONFIG_FILES if f in data), None)
        if file_name is None:
            continue
        if kind == "ConfigMap":
            volumes.append({"name": name, "configMap": {"name": name}})
        else:
            volumes.append({"name": name, "secret": {"secretName": name}})
        mounts.append({"name": name, "mountPath": f"/config/{name}"})
        args += ["--vault-config-file", f"/config/{name}/{file_name}"]
    return volumes, mounts, args


def deployment_for_configurer(vault, config_maps, secrets, tls_annotations):
    spec = vault.spec
    labels = vault.labels_for_configurer()

    cm_volumes, cm_mounts, cm_args = _config_sources("ConfigMap", config_maps)
    secret_volumes, secret_mounts, secret_args = _config_sources("Secret", secrets)
    mounts = cm_mounts + secret_mounts

    pod_spec = {
        "serviceAccountName": spec.get_service_account(),
        "automountServiceAccountToken": True,
        "containers": [{
            "name": "bank-vaults",
            "image": spec.get_bank_vaults_image(),
            "imagePullPolicy": "IfNotPresent",
            "command": ["bank-vaults", "configure"],
            "args": spec.unsealConfig.to_args(vault) + cm_args + secret_args,
            "ports": [{"name": "metrics", "containerPort": 9091, "protocol": "TCP"}],
            "env": (
                credentials_env(vault)
                + tls_env(vault, localhost=False)
                + list(spec.envsConfig)
                + [{"name": "NAMESPACE", "value": vault.namespace}]
            ),
            "volumeMounts": (
                mounts
                + credentials_volume_mounts(vault)
                + tls_volume_mounts(vault)
                + hsm_volume_mounts(vault)
            ),
            "workingDir": "/config",
            "resources": resources_for(vault, "bankVaults"),
        }],
        "volumes": (
            cm_volumes + secret_volumes + credentials_volumes(vault) + tls_volumes(vault)
            + hsm_volumes(vault)
        ),
        "securityContext": pod_security_context(vault),
    }
    if spec.nodeSelector:
        pod_spec["nodeSelector"] = spec.nodeSelector
    if spec.tolerations:
        pod_spec["tolerations"] = spec.tolerations
    # Shares the hostPath PCSCD socket with the Vault pod
    if spec.unsealConfig.hsm_daemon_needed():
        pod_spec["affinity"] = {
            "podAffinity": {
                "requiredDuringSchedulingIgnoredDuringExecution": [{
                    "labelSelector": {"matchLabels": vault.labels_for_vault()},
                    "topologyKey": "kubernetes.io/hostname",
                }]
            }
        }

    pod_spec = fill_pod_spec(pod_spec, spec.vaultConfigurerPodSpec)

    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": object_meta(
            vault,
            configurer_name(vault),
            with_configurer_labels(vault, labels),
            with_configurer_annotations(vault, {}),
        ),
        "spec": {
            "selector": {"matchLabels": labels},
            "revisionHistoryLimit": 0,
            "template": {
                "metadata": {
                    "labels": with_configurer_labels(vault, labels),
                    "annotations": with_configurer_annotations(
                        vault, with_prometheus_annotations("9091", tls_annotations)
                    ),
                },
                "spec": pod_spec,
            },
        },
    }


class ConfigurerManager:
    """ Deploys the configurer and the objects it reads its config from.
    """

    def __init__(self, cluster, applier, log=None):
        self.cluster = cluster
        self.applier = applier
        self.log = log or logger

    def deploy(self, vault, restart_annotations):
        name = configurer_name(vault)
        secret = secret_for_configurer(vault)

        try:
            self.applier.apply(secret)
        except ApiException as e:
            raise TransientPlatformError(f"failed to create/update configurer secret: {e}") from e

        # Config used to live in a ConfigMap of the same name
        try:
            self.cluster.delete("v1", "ConfigMap", name, vault.namespace)
            self.log.info(f"Deleted deprecated configurer ConfigMap {vault.namespace}/{name}")
        except ApiException as e:
            if e.status != 404:
                raise TransientPlatformError(
                    f"failed to delete deprecated configurer configmap: {e}"
                ) from e

        selector = label_selector(vault.labels_for_configurer())
        try:
            config_maps = self.cluster.list(
                "v1", "ConfigMap", namespace=vault.namespace, label_selector=selector
            )
        except ApiException as e:
            raise TransientPlatformError(f"failed to list configmaps: {e}") from e
        try:
            secrets = self.cluster.list(
                "v1", "Secret", namespace=vault.namespace, label_selector=selector
            )
        except ApiException as e:
            raise TransientPlatformError(f"failed to list secrets: {e}") from e

        deployment = deployment_for_configurer(vault, config_maps, secrets, restart_annotations)
        try:
            self.applier.apply(deployment)
        except ApiException as e:
            raise TransientPlatformError(
                f"failed to create/update configurer deployment: {e}"
            ) from e

        try:
            self.applier.apply(service_for_configurer(vault))
        except ApiException as e:
            raise TransientPlatformError(f"failed to create/update service: {e}") from e
