""" Control loop converging the objects behind one Vault resource.
"""

import logging

import pydantic
from kubernetes.client.exceptions import ApiException

from vaultkeeper.crd.base import CRDCondition
from vaultkeeper.errors import (
    MissingDependencyError,
    TransientPlatformError,
    ValidationError,
)
from vaultkeeper.models.vault import API_VERSION, KIND, Vault
from vaultkeeper.services.apply import ObjectApplier
from vaultkeeper.services.ca_distribution import CADistributor
from vaultkeeper.services.configurer_manager import ConfigurerManager
from vaultkeeper.services.health_observer import HealthObserver
from vaultkeeper.services.statefulset import statefulset_for_vault
from vaultkeeper.services.tls_manager import TLSManager, format_expiration
from vaultkeeper.services.vault_resources import (
    CONFIG_HASH_ANNOTATION,
    TLS_EXPIRATION_ANNOTATION,
    config_map_for_fluentd,
    config_map_for_statsd,
    ingress_for_vault,
    load_balancer_ingress_points,
    per_instance_services_for_vault,
    secret_for_raw_config,
    secret_matches,
    service_for_vault,
    service_monitor_for_vault,
)

logger = logging.getLogger(__name__)

MISSING_STORAGE_MESSAGE = "storage configuration is missing"


class ReconcileResult:
    """ Outcome of a pass; requeue_after is set when the pass was suspended.
    """

    def __init__(self, requeue_after=None):
        self.requeue_after = requeue_after

    @property
    def suspended(self):
        return self.requeue_after is not None

    def __repr__(self):
        return f"ReconcileResult(requeue_after={self.requeue_after!r})"


class Reconciler:
    """ Runs the full pipeline for one Vault: objects, TLS, configurer, status.

    All collaborators are injected so the pipeline can run against a
    fake cluster and a mocked HTTP transport.
    """

    def __init__(
        self,
        cluster,
        applier=None,
        tls_manager=None,
        ca_distributor=None,
        observer=None,
        configurer=None,
        requeue_delay=5.0,
        log=None,
    ):
        self.cluster = cluster
        self.log = log or logger
        self.applier = applier or ObjectApplier(cluster, log=self.log)
        self.tls_manager = tls_manager or TLSManager()
        self.ca_distributor = ca_distributor or CADistributor(cluster, self.applier, log=self.log)
        self.observer = observer or HealthObserver(cluster, log=self.log)
        self.configurer = configurer or ConfigurerManager(cluster, self.applier, log=self.log)
        self.requeue_delay = requeue_delay

    def _get_vault(self, namespace, name):
        try:
            body = self.cluster.get(API_VERSION, KIND, name, namespace)
        except ApiException as e:
            raise TransientPlatformError(f"failed to get vault: {e}") from e
        return body

    def _apply(self, obj, what):
        try:
            return self.applier.apply(obj)
        except ApiException as e:
            raise TransientPlatformError(f"failed to create/update {what}: {e}") from e

    def _write_status(self, body, status, what="vault status"):
        body = dict(body)
        # Keep status fields written by others, such as kopf's progress
        body["status"] = {**(body.get("status") or {}), **status}
        try:
            self.cluster.update_status(body)
        except ApiException as e:
            raise TransientPlatformError(f"failed to update {what}: {e}") from e

    def reconcile(self, namespace, name):
        body = self._get_vault(namespace, name)
        if body is None:
            self.log.info(f"Vault {namespace}/{name} not found, nothing to do")
            return ReconcileResult()

        self.log.info(f"Reconciling Vault {namespace}/{name}")
        try:
            vault = Vault.from_body(body)
        except pydantic.ValidationError as e:
            raise ValidationError(f"invalid Vault spec: {e}") from e
        spec = vault.spec

        if not spec.get_storage():
            self._report_missing_storage(body, vault)
            raise MissingDependencyError(MISSING_STORAGE_MESSAGE)

        if spec.size > 1 and not spec.has_ha_storage():
            raise ValidationError("more than 1 replicas are not supported without HA storage backend")

        service = service_for_vault(vault)
        self._apply(service, "service")

        tls_enabled = not spec.is_tls_disabled()
        if service["spec"]["type"] == "LoadBalancer" and tls_enabled and not spec.existingTlsSecretName:
            try:
                service = self.cluster.get("v1", "Service", vault.name, vault.namespace)
            except ApiException as e:
                raise TransientPlatformError(f"failed to get Vault LB service: {e}") from e
            if service is None:
                raise TransientPlatformError("failed to get Vault LB service: not found")
            if not load_balancer_ingress_points(service):
                self.log.info(
                    f"The Vault LB Service {namespace}/{name} has no ingress points yet, "
                    f"waiting {self.requeue_delay} seconds..."
                )
                return ReconcileResult(requeue_after=self.requeue_delay)

        for instance_service in per_instance_services_for_vault(vault):
            self._apply(instance_service, "per instance service")

        tls_expiration = None
        if tls_enabled:
            tls_expiration = self._reconcile_tls(vault, service)

        if spec.is_fluentd_enabled():
            self._apply(config_map_for_fluentd(vault), "fluentd configmap")
        if not spec.is_statsd_disabled():
            self._apply(config_map_for_statsd(vault), "statsd configmap")

        watched_secrets = self._watched_secrets(vault)

        raw_config, config_sum = secret_for_raw_config(vault)
        self._apply(raw_config, "Secret")

        restart_annotations = {
            TLS_EXPIRATION_ANNOTATION: format_expiration(tls_expiration),
            CONFIG_HASH_ANNOTATION: config_sum,
        }
        statefulset = statefulset_for_vault(vault, watched_secrets, restart_annotations, service)
        self._apply(statefulset, "StatefulSet")

        if spec.serviceMonitorEnabled:
            self._apply(service_monitor_for_vault(vault), "serviceMonitor")

        if spec.externalConfig:
            self.configurer.deploy(vault, restart_annotations)

        ingress = ingress_for_vault(vault)
        if ingress is not None:
            self._apply(ingress, "ingress")

        observation = self.observer.observe(vault)
        self._update_status(namespace, name, observation)
        return ReconcileResult()

    def _reconcile_tls(self, vault, service):
        existing = vault.spec.existingTlsSecretName
        secret_name = existing or f"{vault.name}-tls"
        try:
            secret = self.cluster.get("v1", "Secret", secret_name, vault.namespace)
        except ApiException as e:
            raise TransientPlatformError(f"failed to get tls secret for vault: {e}") from e

        tls_expiration = None
        if existing:
            if secret is None:
                raise TransientPlatformError(
                    f"failed to get tls secret for vault: {vault.namespace}/{existing} not found"
                )
        else:
            desired, tls_expiration = self.tls_manager.reconcile_secret(vault, service, secret)
            self._apply(desired, "secret for vault")

        if vault.spec.caNamespaces:
            self.ca_distributor.distribute(vault, secret_name)
        return tls_expiration

    def _watched_secrets(self, vault):
        label_selectors = vault.spec.watchedSecretsLabels
        annotation_selectors = vault.spec.watchedSecretsAnnotations
        if not label_selectors and not annotation_selectors:
            return []
        try:
            secrets = self.cluster.list("v1", "Secret", namespace=vault.namespace)
        except ApiException as e:
            raise TransientPlatformError(f"failed to list secrets in the CRD namespace: {e}") from e
        return [s for s in secrets if secret_matches(s, label_selectors, annotation_selectors)]

    def _report_missing_storage(self, body, vault):
        condition = CRDCondition(type="Healthy", status="False", message=MISSING_STORAGE_MESSAGE)
        conditions = vault.status.conditions
        if (
            len(conditions) == 1
            and conditions[0].status == "False"
            and conditions[0].message == MISSING_STORAGE_MESSAGE
        ):
            return
        status = {
            "nodes": vault.status.nodes,
            "leader": vault.status.leader,
            "conditions": [condition.model_dump(exclude_none=True)],
        }
        self._write_status(body, status)

    def _update_status(self, namespace, name, observation):
        # Re-read to keep the write as fresh as possible
        body = self._get_vault(namespace, name)
        if body is None:
            return
        current = Vault.from_body(body).status

        condition_status = "True" if observation.healthy else "False"
        first = current.conditions[0] if current.conditions else None
        if (
            first is not None
            and current.nodes == observation.nodes
            and current.leader == observation.leader
            and first.status == condition_status
            and (first.error or "") == observation.error
        ):
            return

        condition = CRDCondition(type="Healthy", status=condition_status, error=observation.error)
        status = {
            "nodes": observation.nodes,
            "leader": observation.leader,
            "conditions": [condition.model_dump(exclude_none=True)],
        }
        self.log.debug(f"Updating status of Vault {namespace}/{name}: {status}")
        self._write_status(body, status)
