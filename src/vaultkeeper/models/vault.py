"""Vault CRD models."""

import json
import logging
import re
from datetime import timedelta
from typing import Any, Dict, List, Optional

from pydantic import Field

from vaultkeeper.config import get_settings
from vaultkeeper.crd.base import CRDSpec, CRDStatus
from vaultkeeper.crd.registry import CRDRegistry

logger = logging.getLogger(__name__)

API_GROUP = "vault.banzaicloud.com"
API_VERSION_NAME = "v1alpha1"
API_VERSION = f"{API_GROUP}/{API_VERSION_NAME}"
KIND = "Vault"
PLURAL = "vaults"

DEFAULT_TLS_EXPIRY_THRESHOLD = timedelta(hours=168)

# Storage backends able to coordinate more than one active replica.
HA_STORAGE_TYPES = {
    "consul",
    "dynamodb",
    "etcd",
    "gcs",
    "mysql",
    "postgresql",
    "raft",
    "spanner",
    "zookeeper",
}

# Env names rewritten when coming through the deprecated vaultEnvsConfig.
DEPRECATED_ENV_NAMES = {
    "VAULT_JSON_LOG": "SECRET_INIT_JSON_LOG",
    "VAULT_ENV_LOG_SERVER": "SECRET_INIT_LOG_SERVER",
    "VAULT_ENV_DAEMON": "SECRET_INIT_DAEMON",
    "VAULT_ENV_DELAY": "SECRET_INIT_DELAY",
    "VAULT_ENV_FROM_PATH": "VAULT_FROM_PATH",
    "VAULT_ENV_PASSTHROUGH": "VAULT_PASSTHROUGH",
}

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1,
    "m": 60,
    "h": 3600,
}


def parse_duration(value):
    """Parse a Go style duration such as ``168h`` or ``1h30m`` into a timedelta."""
    value = str(value).strip()
    if not value:
        raise ValueError("empty duration")
    if value == "0":
        return timedelta(0)
    parts = _DURATION_PART.findall(value)
    if "".join(number + unit for number, unit in parts) != value:
        raise ValueError(f"invalid duration: {value}")
    seconds = sum(float(number) * _DURATION_UNITS[unit] for number, unit in parts)
    return timedelta(seconds=seconds)


def to_bool(value):
    """Loose boolean cast for values coming out of free-form Vault config."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in ("1", "t", "true", "yes", "on")
    return False


def parse_version(image):
    """Extract a (major, minor, patch) tuple from an image tag, or None."""
    tag = image.rsplit(":", 1)[1] if ":" in image.rsplit("/", 1)[-1] else ""
    match = re.match(r"^v?(\d+)\.(\d+)(?:\.(\d+))?", tag)
    if not match:
        return None
    return tuple(int(part or 0) for part in match.groups())


class UnsealOptions(CRDSpec):
    """Options passed to every unseal mode."""

    preFlightChecks: bool = Field(default=True)
    storeRootToken: bool = Field(default=True)
    secretShares: int = Field(default=0, description="Number of unseal key shares")
    secretThreshold: int = Field(default=0, description="Shares needed to unseal")


class KubernetesUnsealConfig(CRDSpec):
    secretNamespace: str = ""
    secretName: str = ""


class GoogleUnsealConfig(CRDSpec):
    kmsKeyRing: str
    kmsCryptoKey: str
    kmsLocation: str
    kmsProject: str
    storageBucket: str


class AWSUnsealConfig(CRDSpec):
    kmsKeyId: List[str] = Field(default_factory=list)
    kmsRegion: List[str] = Field(default_factory=list)
    s3Bucket: List[str] = Field(default_factory=list)
    s3Prefix: str = ""
    s3Region: List[str] = Field(default_factory=list)


class AzureUnsealConfig(CRDSpec):
    keyVaultName: List[str] = Field(default_factory=list)


class VaultUnsealConfig(CRDSpec):
    address: str
    unsealKeysPath: str
    role: str = ""
    authPath: str = ""
    tokenPath: str = ""
    token: str = ""


class HSMUnsealConfig(CRDSpec):
    daemon: bool = False
    modulePath: str = ""
    slotId: int = 0
    tokenLabel: str = ""
    pin: str = ""
    keyLabel: str = ""


class UnsealConfig(CRDSpec):
    """How the bank-vaults sidecar stores and reads unseal keys."""

    options: UnsealOptions = Field(default_factory=UnsealOptions)
    kubernetes: KubernetesUnsealConfig = Field(default_factory=KubernetesUnsealConfig)
    google: Optional[GoogleUnsealConfig] = None
    aws: Optional[AWSUnsealConfig] = None
    azure: Optional[AzureUnsealConfig] = None
    vault: Optional[VaultUnsealConfig] = None
    hsm: Optional[HSMUnsealConfig] = None

    def hsm_daemon_needed(self):
        return self.hsm is not None and self.hsm.daemon

    def _kubernetes_args(self, vault):
        namespace = self.kubernetes.secretNamespace or vault.namespace
        name = self.kubernetes.secretName or f"{vault.name}-unseal-keys"
        return ["--k8s-secret-namespace", namespace, "--k8s-secret-name", name]

    def to_args(self, vault):
        """Render bank-vaults command line arguments for this unseal setup."""
        if self.google is not None:
            args = [
                "--mode", "google-cloud-kms-gcs",
                "--google-cloud-kms-key-ring", self.google.kmsKeyRing,
                "--google-cloud-kms-crypto-key", self.google.kmsCryptoKey,
                "--google-cloud-kms-location", self.google.kmsLocation,
                "--google-cloud-kms-project", self.google.kmsProject,
                "--google-cloud-storage-bucket", self.google.storageBucket,
            ]
        elif self.azure is not None:
            args = ["--mode", "azure-key-vault"]
            for name in self.azure.keyVaultName:
                args += ["--azure-key-vault-name", name]
        elif self.aws is not None:
            args = ["--mode", "aws-kms-s3"]
            for flag, values in (
                ("--aws-kms-key-id", self.aws.kmsKeyId),
                ("--aws-kms-region", self.aws.kmsRegion),
                ("--aws-s3-bucket", self.aws.s3Bucket),
                ("--aws-s3-region", self.aws.s3Region),
            ):
                for value in values:
                    args += [flag, value]
            args += ["--aws-s3-prefix", self.aws.s3Prefix]
        elif self.vault is not None:
            args = [
                "--mode", "vault",
                "--vault-addr", self.vault.address,
                "--vault-unseal-keys-path", self.vault.unsealKeysPath,
            ]
            if self.vault.role:
                args += ["--vault-role", self.vault.role]
            if self.vault.authPath:
                args += ["--vault-auth-path", self.vault.authPath]
            if self.vault.tokenPath:
                args += ["--vault-token-path", self.vault.tokenPath]
            if self.vault.token:
                args += ["--vault-token", self.vault.token]
        elif self.hsm is not None:
            mode = "hsm-k8s" if self.hsm.daemon else "hsm"
            args = [
                "--mode", mode,
                "--hsm-module-path", self.hsm.modulePath,
                "--hsm-slot-id", str(self.hsm.slotId),
                "--hsm-token-label", self.hsm.tokenLabel,
                "--hsm-pin", self.hsm.pin,
                "--hsm-key-label", self.hsm.keyLabel,
            ]
            if mode == "hsm-k8s":
                args += self._kubernetes_args(vault)
        else:
            args = ["--mode", "k8s"] + self._kubernetes_args(vault)

        if self.options.preFlightChecks:
            args += ["--pre-flight-checks", "true"]
        if self.options.storeRootToken:
            args += ["--store-root-token", "true"]
        if self.options.secretShares:
            args += ["--secret-shares", str(self.options.secretShares)]
        if self.options.secretThreshold:
            args += ["--secret-threshold", str(self.options.secretThreshold)]
        return args


class CredentialsConfig(CRDSpec):
    """Cloud credentials mounted into Vault and the sidecars."""

    env: str = ""
    path: str = ""
    secretName: str = ""


class IngressConfig(CRDSpec):
    annotations: Dict[str, str] = Field(default_factory=dict)
    spec: Dict[str, Any] = Field(default_factory=dict)


class ComponentResources(CRDSpec):
    """Resource requirement overrides per managed container."""

    vault: Optional[Dict[str, Any]] = None
    bankVaults: Optional[Dict[str, Any]] = None
    hsmDaemon: Optional[Dict[str, Any]] = None
    prometheusExporter: Optional[Dict[str, Any]] = None
    fluentd: Optional[Dict[str, Any]] = None


class VaultStatus(CRDStatus):
    """Observed state of a Vault cluster."""

    nodes: List[str] = Field(default_factory=list)
    leader: str = ""


@CRDRegistry.register(
    API_GROUP, API_VERSION_NAME, KIND, PLURAL, status_model=VaultStatus, short_names=["vault"]
)
class VaultSpec(CRDSpec):
    """Vault CRD specification."""

    size: int = Field(default=1, ge=0, description="Number of Vault replicas")
    image: str = Field(default="hashicorp/vault:1.14.8", description="Vault image")
    bankVaultsImage: str = Field(default="", description="bank-vaults sidecar image")
    statsdDisabled: bool = Field(default=False)
    statsdImage: str = Field(default="prom/statsd-exporter:latest")
    statsdConfig: str = Field(default="", description="statsd exporter mapping config")
    fluentdEnabled: bool = Field(default=False)
    fluentdImage: str = Field(default="fluent/fluentd:edge")
    fluentdConfLocation: str = Field(default="")
    fluentdConfFile: str = Field(default="")
    fluentdConfig: str = Field(default="")
    veleroEnabled: bool = Field(default=False)
    veleroFsfreezeImage: str = Field(default="velero/fsfreeze-pause:latest")

    serviceType: str = Field(default="ClusterIP")
    loadBalancerIP: str = Field(default="")
    servicePorts: Dict[str, int] = Field(default_factory=dict)
    serviceRegistrationEnabled: bool = Field(default=False)
    serviceMonitorEnabled: bool = Field(default=False)
    serviceAccount: str = Field(default="")

    config: Dict[str, Any] = Field(
        default_factory=dict, description="Vault server configuration (JSON form)"
    )
    externalConfig: Dict[str, Any] = Field(
        default_factory=dict, description="Configuration applied by the configurer"
    )
    unsealConfig: UnsealConfig = Field(default_factory=UnsealConfig)
    credentialsConfig: CredentialsConfig = Field(default_factory=CredentialsConfig)

    existingTlsSecretName: str = Field(default="")
    tlsAdditionalHosts: List[str] = Field(default_factory=list)
    tlsExpiryThreshold: str = Field(default="")
    caNamespaces: List[str] = Field(default_factory=list)

    raftLeaderAddress: str = Field(default="")
    raftLeaderApiSchemeOverride: str = Field(default="")

    annotations: Dict[str, str] = Field(default_factory=dict)
    vaultAnnotations: Dict[str, str] = Field(default_factory=dict)
    vaultLabels: Dict[str, str] = Field(default_factory=dict)
    vaultConfigurerAnnotations: Dict[str, str] = Field(default_factory=dict)
    vaultConfigurerLabels: Dict[str, str] = Field(default_factory=dict)

    watchedSecretsLabels: List[Dict[str, str]] = Field(default_factory=list)
    watchedSecretsAnnotations: List[Dict[str, str]] = Field(default_factory=list)

    resources: Optional[ComponentResources] = None
    vaultPodSpec: Optional[Dict[str, Any]] = None
    vaultContainerSpec: Dict[str, Any] = Field(default_factory=dict)
    vaultConfigurerPodSpec: Optional[Dict[str, Any]] = None
    vaultInitContainers: List[Dict[str, Any]] = Field(default_factory=list)
    vaultContainers: List[Dict[str, Any]] = Field(default_factory=list)

    envsConfig: List[Dict[str, Any]] = Field(default_factory=list)
    sidecarEnvsConfig: List[Dict[str, Any]] = Field(default_factory=list)
    secretInitsConfig: List[Dict[str, Any]] = Field(default_factory=list)
    vaultEnvsConfig: List[Dict[str, Any]] = Field(default_factory=list)

    volumes: List[Dict[str, Any]] = Field(default_factory=list)
    volumeMounts: List[Dict[str, Any]] = Field(default_factory=list)
    bankVaultsVolumeMounts: List[Dict[str, Any]] = Field(default_factory=list)
    volumeClaimTemplates: List[Dict[str, Any]] = Field(default_factory=list)

    nodeSelector: Dict[str, str] = Field(default_factory=dict)
    tolerations: List[Dict[str, Any]] = Field(default_factory=list)
    affinity: Optional[Dict[str, Any]] = None
    podAntiAffinity: str = Field(default="", description="Topology key for anti-affinity")
    nodeAffinity: Dict[str, Any] = Field(default_factory=dict)
    securityContext: Dict[str, Any] = Field(default_factory=dict)

    ingress: Optional[IngressConfig] = None

    class Config:
        # Vault CRs carry fields this operator does not act on.
        extra = "ignore"
        validate_assignment = True

    # Storage

    def get_storage(self):
        storage = self.config.get("storage")
        return storage if isinstance(storage, dict) else {}

    def get_storage_type(self):
        return next(iter(self.get_storage()), "")

    def has_storage_ha_enabled(self):
        storage_type = self.get_storage_type()
        storage_specs = self.get_storage().get(storage_type) or {}
        # Consul and raft are always HA
        return storage_type in ("consul", "raft") or to_bool(storage_specs.get("ha_enabled"))

    def has_ha_storage(self):
        if self.get_storage_type() in HA_STORAGE_TYPES and self.has_storage_ha_enabled():
            return True
        return bool(self.config.get("ha_storage"))

    def is_raft_storage(self):
        return self.get_storage_type() == "raft"

    def is_raft_ha_storage(self):
        ha_storage = self.config.get("ha_storage")
        return isinstance(ha_storage, dict) and "raft" in ha_storage

    def is_raft_bootstrap_follower(self):
        return self.is_raft_storage() and self.raftLeaderAddress not in ("", "self")

    # Listener and seal

    def _tcp_listener(self):
        listener = self.config.get("listener") or {}
        if isinstance(listener, list):
            listener = next((item for item in listener if "tcp" in item), {})
        tcp = listener.get("tcp") if isinstance(listener, dict) else None
        return tcp if isinstance(tcp, dict) else {}

    def is_tls_disabled(self):
        return to_bool(self._tcp_listener().get("tls_disable"))

    def is_telemetry_unauthenticated(self):
        telemetry = self._tcp_listener().get("telemetry") or {}
        return to_bool(telemetry.get("unauthenticated_metrics_access"))

    def is_auto_unseal(self):
        return "seal" in self.config

    def is_mlock_disabled(self):
        return to_bool(self.config.get("disable_mlock"))

    # Features

    def is_statsd_disabled(self):
        return self.statsdDisabled

    def is_fluentd_enabled(self):
        return self.fluentdEnabled

    # Defaults

    def get_api_scheme(self):
        return "http" if self.is_tls_disabled() else "https"

    def get_api_port_name(self):
        return "api-port"

    def get_config_path(self):
        return "/vault/config"

    def get_fluentd_conf_mount_path(self):
        return self.fluentdConfLocation or "/fluentd/etc"

    def get_service_account(self):
        return self.serviceAccount or "default"

    def get_bank_vaults_image(self):
        return self.bankVaultsImage or get_settings().bank_vaults_image

    def get_version(self):
        return parse_version(self.image)

    def get_tls_expiry_threshold(self):
        if not self.tlsExpiryThreshold:
            return DEFAULT_TLS_EXPIRY_THRESHOLD
        try:
            return parse_duration(self.tlsExpiryThreshold)
        except ValueError as e:
            logger.warning(f"Falling back to default TLS expiry threshold: {e}")
            return DEFAULT_TLS_EXPIRY_THRESHOLD

    def get_secret_init_envs(self):
        """secretInitsConfig plus the deprecated vaultEnvsConfig under new names."""
        envs = list(self.secretInitsConfig)
        for env in self.vaultEnvsConfig:
            env = dict(env)
            env["name"] = DEPRECATED_ENV_NAMES.get(env.get("name"), env.get("name"))
            envs.append(env)
        return envs


class Vault:
    """A Vault custom resource: identity plus parsed spec and status."""

    def __init__(self, name, namespace, spec, status=None, uid="", resource_version=""):
        self.name = name
        self.namespace = namespace
        self.spec = spec
        self.status = status or VaultStatus()
        self.uid = uid
        self.resource_version = resource_version

    @classmethod
    def from_body(cls, body):
        metadata = body.get("metadata", {})
        return cls(
            name=metadata["name"],
            namespace=metadata.get("namespace", "default"),
            spec=VaultSpec(**(body.get("spec") or {})),
            status=VaultStatus(**(body.get("status") or {})),
            uid=metadata.get("uid", ""),
            resource_version=metadata.get("resourceVersion", ""),
        )

    def labels_for_vault(self):
        return {"app.kubernetes.io/name": "vault", "vault_cr": self.name}

    def labels_for_configurer(self):
        return {"app.kubernetes.io/name": "vault-configurator", "vault_cr": self.name}

    def owner_reference(self):
        return {
            "apiVersion": API_VERSION,
            "kind": KIND,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }

    def config_json(self):
        """Vault server config as rendered into the raw-config secret."""
        config = dict(self.spec.config)
        if self.spec.serviceRegistrationEnabled and self.spec.has_ha_storage():
            config.setdefault(
                "service_registration", {"kubernetes": {"namespace": self.namespace}}
            )
        return json.dumps(config, sort_keys=True, separators=(",", ":")).encode()

    def external_config_json(self):
        return json.dumps(
            self.spec.externalConfig, sort_keys=True, separators=(",", ":")
        ).encode()
