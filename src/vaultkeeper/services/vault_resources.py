""" Builders for the Services, ConfigMaps, Secrets and other objects around a Vault.

Every builder is pure: it takes the parsed Vault (plus whatever live
state it needs) and returns a manifest dict carrying a controller owner
reference back to the Vault.
"""

import base64
import hashlib
import hmac
import logging

from vaultkeeper.services.merge import dedupe_by_name

logger = logging.getLogger(__name__)

TLS_EXPIRATION_ANNOTATION = "vault.banzaicloud.io/tls-expiration-date"
CONFIG_HASH_ANNOTATION = "vault.banzaicloud.io/vault-config"
WATCHED_SECRETS_ANNOTATION = "vault.banzaicloud.io/watched-secrets-sum"

RAW_CONFIG_KEY = "vault-config.json"
CONFIGURER_CONFIG_FILE = "vault-config.yml"
CONFIGURER_CONFIG_FILES = ("vault-config.yml", "vault-config.yaml")
STATSD_MAPPING_KEY = "statsd-mapping.conf"
STATEFULSET_POD_NAME_LABEL = "statefulset.kubernetes.io/pod-name"

DEFAULT_STATSD_MAPPING = "\n".join([
    "mappings:",
    "        - match: vault.route.*.*",
    '          name: "vault_route"',
    "          labels:",
    '            method: "$1"',
    '            path: "$2"',
])

SERVICE_TYPES = ("ClusterIP", "NodePort", "LoadBalancer", "ExternalName")

VELERO_ANNOTATIONS = {
    "pre.hook.backup.velero.io/container": "velero-fsfreeze",
    "pre.hook.backup.velero.io/command": '["/sbin/fsfreeze", "--freeze", "/vault/file/"]',
    "post.hook.backup.velero.io/container": "velero-fsfreeze",
    "post.hook.backup.velero.io/command": '["/sbin/fsfreeze", "--unfreeze", "/vault/file/"]',
}

SIDECAR_RESOURCES = {
    "requests": {"cpu": "100m", "memory": "64Mi"},
    "limits": {"cpu": "200m", "memory": "128Mi"},
}

DEFAULT_RESOURCES = {
    "vault": {
        "requests": {"cpu": "250m", "memory": "256Mi"},
        "limits": {"cpu": "1", "memory": "512Mi"},
    },
    "bankVaults": SIDECAR_RESOURCES,
    "hsmDaemon": SIDECAR_RESOURCES,
    "prometheusExporter": SIDECAR_RESOURCES,
    "fluentd": SIDECAR_RESOURCES,
}


def encode_data(data):
    """ Base64-encode secret values the way the API stores them.
    """
    encoded = {}
    for key, value in data.items():
        if isinstance(value, str):
            value = value.encode()
        encoded[key] = base64.b64encode(value).decode()
    return encoded


def decode_data(data):
    return {key: base64.b64decode(value) for key, value in (data or {}).items()}


def object_meta(vault, name, labels=None, annotations=None):
    metadata = {
        "name": name,
        "namespace": vault.namespace,
        "labels": labels if labels is not None else vault.labels_for_vault(),
        "ownerReferences": [vault.owner_reference()],
    }
    if annotations:
        metadata["annotations"] = annotations
    return metadata


# Labels and annotations, applied in layers where later layers win.

def with_vault_labels(vault, labels):
    return {**labels, **vault.spec.vaultLabels}


def with_configurer_labels(vault, labels):
    return {**labels, **vault.spec.vaultConfigurerLabels}


def common_annotations(vault):
    return dict(vault.spec.annotations)


def with_vault_annotations(vault, annotations):
    return {**annotations, **vault.spec.vaultAnnotations}


def with_configurer_annotations(vault, annotations):
    return {**annotations, **vault.spec.vaultConfigurerAnnotations}


def with_prometheus_annotations(port, annotations):
    return {
        **annotations,
        "prometheus.io/scrape": "true",
        "prometheus.io/path": "/metrics",
        "prometheus.io/port": port or "9102",
    }


def with_velero_annotations(vault, annotations):
    if not vault.spec.veleroEnabled:
        return annotations
    return {**annotations, **VELERO_ANNOTATIONS}


def watched_secrets_sum(secrets):
    """ HMAC-SHA256 over every key=value pair of the watched secrets.
    """
    values = []
    for secret in secrets:
        for key, value in decode_data(secret.get("data")).items():
            values.append(f"{key}={value.decode('utf-8', errors='surrogateescape')}")
    values.sort()
    digest = hmac.new(b"", ";;".join(values).encode("utf-8", errors="surrogateescape"), hashlib.sha256)
    return digest.hexdigest()


def with_watched_secrets(secrets, annotations):
    if not secrets:
        return annotations
    return {**annotations, WATCHED_SECRETS_ANNOTATION: watched_secrets_sum(secrets)}


def matches_selector(selector, values):
    return all(values.get(key) == value for key, value in selector.items())


def secret_matches(secret, label_selectors, annotation_selectors):
    """ True when any label selector OR any annotation selector matches.
    """
    metadata = secret.get("metadata") or {}
    labels = metadata.get("labels") or {}
    annotations = metadata.get("annotations") or {}
    return any(matches_selector(s, labels) for s in label_selectors) or any(
        matches_selector(s, annotations) for s in annotation_selectors
    )


# Ports

def service_ports(vault):
    """ Service ports and matching container ports, sorted by name.
    """
    ports = vault.spec.servicePorts or {
        vault.spec.get_api_port_name(): 8200,
        "cluster-port": 8201,
    }
    names = sorted(ports)
    return (
        [{"name": name, "port": ports[name]} for name in names],
        [{"name": name, "containerPort": ports[name]} for name in names],
    )


def service_type(vault):
    return vault.spec.serviceType if vault.spec.serviceType in SERVICE_TYPES else "ClusterIP"


# Hosts

def per_instance_service_name(name, index):
    return f"{name}-{index}"


def hosts_for_service(service, namespace):
    return [service, f"{service}.{namespace}", f"{service}.{namespace}.svc.cluster.local"]


def load_balancer_ingress_points(service):
    """ Defined loadBalancerIP, else whatever IPs and hostnames were allocated.
    """
    spec = (service or {}).get("spec") or {}
    if spec.get("loadBalancerIP"):
        return [spec["loadBalancerIP"]]
    points = []
    status = (service or {}).get("status") or {}
    for ingress in (status.get("loadBalancer") or {}).get("ingress") or []:
        if ingress.get("ip"):
            points.append(ingress["ip"])
        if ingress.get("hostname"):
            points.append(ingress["hostname"])
    return points


def hosts_and_ips_for_vault(vault, service):
    hosts = ["127.0.0.1"]
    hosts += hosts_for_service(vault.name, vault.namespace)
    hosts += load_balancer_ingress_points(service)
    hosts += [host for host in vault.spec.tlsAdditionalHosts if host]
    if vault.spec.size > 1:
        for i in range(vault.spec.size):
            hosts += hosts_for_service(per_instance_service_name(vault.name, i), vault.namespace)
    return hosts


# Shared pod pieces

def resources_for(vault, component):
    overrides = vault.spec.resources
    value = getattr(overrides, component, None) if overrides is not None else None
    return value if value is not None else DEFAULT_RESOURCES[component]


def tls_env(vault, localhost):
    host = "127.0.0.1" if localhost else f"{vault.name}.{vault.namespace}"
    if vault.spec.is_tls_disabled():
        return [{"name": "VAULT_ADDR", "value": f"http://{host}:8200"}]
    return [
        {"name": "VAULT_ADDR", "value": f"https://{host}:8200"},
        {"name": "VAULT_CACERT", "value": "/vault/tls/ca.crt"},
    ]


def tls_volumes(vault):
    if vault.spec.is_tls_disabled():
        return []
    if vault.spec.existingTlsSecretName:
        secret = {
            "secretName": vault.spec.existingTlsSecretName,
            "items": [
                {"key": "ca.crt", "path": "ca.crt"},
                {"key": "tls.crt", "path": "server.crt"},
                {"key": "tls.key", "path": "server.key"},
            ],
        }
    else:
        secret = {"secretName": f"{vault.name}-tls"}
    return [{"name": "vault-tls", "secret": secret}]


def tls_volume_mounts(vault):
    if vault.spec.is_tls_disabled():
        return []
    return [{"name": "vault-tls", "mountPath": "/vault/tls"}]


def credentials_env(vault):
    credentials = vault.spec.credentialsConfig
    if not credentials.env:
        return []
    return [{"name": credentials.env, "value": credentials.path}]


def credentials_volumes(vault):
    secret_name = vault.spec.credentialsConfig.secretName
    if not secret_name:
        return []
    return [{"name": secret_name, "secret": {"secretName": secret_name}}]


def credentials_volume_mounts(vault):
    credentials = vault.spec.credentialsConfig
    if not credentials.secretName:
        return []
    return [{
        "name": credentials.secretName,
        "mountPath": credentials.path,
        "subPath": credentials.path.rsplit("/", 1)[-1],
    }]


def hsm_volumes(vault):
    if not vault.spec.unsealConfig.hsm_daemon_needed():
        return []
    return [{"name": "hsm-pcscd", "hostPath": {"path": "/var/run/pcscd/"}}]


def hsm_volume_mounts(vault):
    if not vault.spec.unsealConfig.hsm_daemon_needed():
        return []
    return [{"name": "hsm-pcscd", "mountPath": "/var/run/pcscd/"}]


def pod_security_context(vault):
    return vault.spec.securityContext or {"fsGroup": 1000}


def vault_volume_mounts(vault, mounts):
    return dedupe_by_name(mounts, vault.spec.volumeMounts)


# Objects

def service_for_vault(vault):
    labels = {**vault.labels_for_vault(), "global_service": "true"}
    selector = vault.labels_for_vault()
    if vault.spec.serviceRegistrationEnabled:
        selector["vault-active"] = "true"

    annotations = with_vault_annotations(vault, common_annotations(vault))
    if vault.spec.ingress is not None and not vault.spec.is_tls_disabled():
        annotations["cloud.google.com/app-protocols"] = (
            f'{{"{vault.spec.get_api_port_name()}":"HTTPS"}}'
        )

    ports, _ = service_ports(vault)
    ports += [{"name": "metrics", "port": 9091}, {"name": "statsd", "port": 9102}]

    spec = {
        "type": service_type(vault),
        "selector": selector,
        "ports": ports,
        "publishNotReadyAddresses": vault.spec.is_raft_bootstrap_follower(),
    }
    if vault.spec.loadBalancerIP:
        spec["loadBalancerIP"] = vault.spec.loadBalancerIP

    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": object_meta(
            vault, vault.name, with_vault_labels(vault, labels), annotations
        ),
        "spec": spec,
    }


def per_instance_services_for_vault(vault):
    ports, _ = service_ports(vault)
    ports += [{"name": "metrics", "port": 9091}]
    services = []
    for i in range(vault.spec.size):
        pod_name = per_instance_service_name(vault.name, i)
        labels = {**vault.labels_for_vault(), STATEFULSET_POD_NAME_LABEL: pod_name}
        services.append({
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": object_meta(
                vault,
                pod_name,
                with_vault_labels(vault, labels),
                with_vault_annotations(vault, common_annotations(vault)),
            ),
            "spec": {
                "type": "ClusterIP",
                "selector": labels,
                "ports": ports,
                "publishNotReadyAddresses": True,
            },
        })
    return services


def service_monitor_for_vault(vault):
    labels = vault.labels_for_vault()
    version = vault.spec.get_version()
    if version is not None and version >= (1, 1, 0):
        endpoint = {
            "interval": "30s",
            "port": vault.spec.get_api_port_name(),
            "scheme": vault.spec.get_api_scheme(),
            "params": {"format": ["prometheus"]},
            "path": "/v1/sys/metrics",
            "tlsConfig": {"insecureSkipVerify": True},
        }
        if not vault.spec.is_telemetry_unauthenticated():
            endpoint["bearerTokenFile"] = f"/etc/prometheus/config_out/.{vault.name}-token"
    else:
        endpoint = {"interval": "30s", "port": "prometheus"}

    return {
        "apiVersion": "monitoring.coreos.com/v1",
        "kind": "ServiceMonitor",
        "metadata": object_meta(vault, vault.name, labels),
        "spec": {
            "jobLabel": "vault_cr",
            "selector": {
                "matchLabels": labels,
                "matchExpressions": [
                    {"key": STATEFULSET_POD_NAME_LABEL, "operator": "Exists"}
                ],
            },
            "namespaceSelector": {"matchNames": [vault.namespace]},
            "endpoints": [endpoint],
        },
    }


def ingress_for_vault(vault):
    ingress = vault.spec.ingress
    if ingress is None:
        return None
    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "Ingress",
        "metadata": object_meta(
            vault, vault.name, vault.labels_for_vault(), dict(ingress.annotations)
        ),
        "spec": ingress.spec,
    }


def config_map_for_statsd(vault):
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": object_meta(vault, f"{vault.name}-statsd-mapping"),
        "data": {STATSD_MAPPING_KEY: vault.spec.statsdConfig or DEFAULT_STATSD_MAPPING},
    }


def config_map_for_fluentd(vault):
    conf_file = vault.spec.fluentdConfFile or "fluent.conf"
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": object_meta(vault, f"{vault.name}-fluentd-config"),
        "data": {conf_file: vault.spec.fluentdConfig},
    }


def secret_for_raw_config(vault):
    """ Raw config secret plus the sha256 of its content.
    """
    config_json = vault.config_json()
    secret = {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": object_meta(vault, f"{vault.name}-raw-config"),
        "type": "Opaque",
        "data": encode_data({RAW_CONFIG_KEY: config_json}),
    }
    return secret, hashlib.sha256(config_json).hexdigest()


def tls_secret_for_vault(vault, data):
    """ TLS secret around already base64-encoded chain data.
    """
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": object_meta(
            vault,
            f"{vault.name}-tls",
            with_vault_labels(vault, vault.labels_for_vault()),
            with_vault_annotations(vault, common_annotations(vault)),
        ),
        "type": "Opaque",
        "data": data,
    }
