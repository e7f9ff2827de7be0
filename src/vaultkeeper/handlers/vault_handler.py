""" kopf handlers driving reconciliation of Vault resources.
"""

import logging
import threading

import kopf

from vaultkeeper.config import get_settings
from vaultkeeper.errors import ValidationError, VaultOperatorError
from vaultkeeper.models.vault import API_GROUP, API_VERSION_NAME, PLURAL

logger = logging.getLogger(__name__)

_reconciler = None
_locks = {}
_locks_guard = threading.Lock()


def configure(reconciler):
    """ Install the reconciler used by every handler.
    """
    global _reconciler
    _reconciler = reconciler


def get_reconciler():
    if _reconciler is None:
        raise kopf.TemporaryError("Reconciler not initialised yet", delay=get_settings().requeue_delay)
    return _reconciler


def lock_for(namespace, name):
    with _locks_guard:
        return _locks.setdefault((namespace, name), threading.Lock())


def run_reconcile(namespace, name, body=None):
    """ Run one pass and translate its outcome into kopf's retry semantics.
    """
    reconciler = get_reconciler()
    delay = get_settings().requeue_delay
    try:
        result = reconciler.reconcile(namespace, name)
    except ValidationError as e:
        logger.error(f"Vault {namespace}/{name} is invalid: {e}")
        if body is not None:
            kopf.warn(body, reason="InvalidSpec", message=str(e))
        raise kopf.PermanentError(str(e)) from e
    except VaultOperatorError as e:
        logger.warning(f"Reconciling Vault {namespace}/{name} failed: {e}")
        if body is not None:
            kopf.warn(body, reason="ReconcileFailed", message=str(e))
        raise kopf.TemporaryError(str(e), delay=delay) from e

    if result.suspended:
        raise kopf.TemporaryError(
            "Waiting for load balancer ingress points", delay=result.requeue_after
        )
    return result


@kopf.on.create(API_GROUP, API_VERSION_NAME, PLURAL)
@kopf.on.update(API_GROUP, API_VERSION_NAME, PLURAL)
@kopf.on.resume(API_GROUP, API_VERSION_NAME, PLURAL)
def reconcile_vault(name, namespace, body, **kwargs):
    """ Converge a Vault after it was created, changed, or seen on startup.
    """
    with lock_for(namespace, name):
        run_reconcile(namespace, name, body)
    kopf.info(body, reason="Reconciled", message=f"Vault {name} reconciled")


@kopf.timer(API_GROUP, API_VERSION_NAME, PLURAL, interval=get_settings().sync_period)
def resync_vault(name, namespace, **kwargs):
    """ Periodic pass; skipped while another pass for the same Vault runs.
    """
    lock = lock_for(namespace, name)
    if not lock.acquire(blocking=False):
        logger.debug(f"Vault {namespace}/{name} is already being reconciled, skipping resync")
        return
    try:
        run_reconcile(namespace, name)
    finally:
        lock.release()


@kopf.on.delete(API_GROUP, API_VERSION_NAME, PLURAL, optional=True)
def forget_vault(name, namespace, **kwargs):
    """ Owned objects are garbage collected through owner references.
    """
    with _locks_guard:
        _locks.pop((namespace, name), None)
    logger.info(f"Vault {namespace}/{name} deleted")
