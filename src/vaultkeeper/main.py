import kopf
import logging
import kubernetes

from vaultkeeper.config import get_settings
from vaultkeeper.crd.generator import VaultCRDManager
from vaultkeeper.handlers import vault_handler
from vaultkeeper.services.cluster import ClusterClient
from vaultkeeper.services.health_observer import HealthObserver, new_http_client
from vaultkeeper.services.reconciler import Reconciler

logging.basicConfig(
    level=getattr(logging, get_settings().log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Health probe client, closed on cleanup
http_client = None


def load_kubernetes_config():
    try:
        kubernetes.config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except kubernetes.config.ConfigException:
        kubernetes.config.load_kube_config()
        logger.info("Loaded local Kubernetes config")


def apply_crds(settings):
    crd_manager = VaultCRDManager()
    if settings.generate_crd_files:
        logger.info("Generating CRD files and applying to cluster")
        crd_manager.generate_all_crds(force=True)
    else:
        logger.info("Applying CRDs in memory-only mode (no YAML files)")

    if crd_manager.apply_crds_to_cluster():
        logger.info("CRDs applied to cluster successfully")
    else:
        logger.warning("No CRDs were applied to cluster")


@kopf.on.startup()
def startup_fn(settings: kopf.OperatorSettings, **kwargs):
    """Configure the operator and wire the reconciler."""
    global http_client

    logger.info("vaultkeeper operator is starting up...")
    operator_settings = get_settings()

    load_kubernetes_config()

    if operator_settings.manage_crds:
        apply_crds(operator_settings)

    http_client = new_http_client(timeout=operator_settings.health_probe_timeout)
    cluster = ClusterClient()
    vault_handler.configure(
        Reconciler(
            cluster,
            observer=HealthObserver(cluster, http_client=http_client),
            requeue_delay=operator_settings.requeue_delay,
        )
    )

    settings.batching.worker_limit = operator_settings.worker_limit
    settings.execution.max_workers = operator_settings.worker_limit
    settings.posting.enabled = operator_settings.posting_enabled
    settings.watching.server_timeout = operator_settings.server_timeout

    logger.info(f"Worker limit: {settings.batching.worker_limit}")
    logger.info(f"Posting enabled: {settings.posting.enabled}")
    logger.info(f"Resync period: {operator_settings.sync_period}s")
    logger.info("vaultkeeper operator startup complete")


@kopf.on.cleanup()
def cleanup_fn(**kwargs):
    """Cleanup operator resources."""
    global http_client

    logger.info("vaultkeeper operator is shutting down...")
    if http_client is not None:
        http_client.close()
        http_client = None
    vault_handler.configure(None)
    logger.info("vaultkeeper operator shutdown complete")


def main():
    operator_settings = get_settings()
    try:
        if operator_settings.watch_namespace:
            kopf.run(namespaces=[operator_settings.watch_namespace])
        else:
            kopf.run(clusterwide=True)
    except KeyboardInterrupt:
        logger.info("Operator stopped by user")
    except Exception as e:
        logger.error(f"Operator failed: {e}")
        raise


if __name__ == "__main__":
    main()
