"""CRD Registry for the operator's custom resource models."""

import importlib
import logging

logger = logging.getLogger(__name__)


class CRDRegistry:
    """Global registry of CRD models."""

    _instance = None
    _initialised = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._models = {}
            cls._instance._initialised = False
        return cls._instance

    def __init__(self):
        if not self._initialised:
            self._models = {}
            self._initialised = True

    @classmethod
    def register(cls, group, version, kind, plural=None, scope="Namespaced",
                 status_model=None, short_names=None):
        """Decorator to register CRD spec models.

        Args:
            group: API group (e.g., 'vault.banzaicloud.com')
            version: API version (e.g., 'v1alpha1')
            kind: Kind name (e.g., 'Vault')
            plural: Plural name (defaults to kind.lower() + 's')
            scope: 'Namespaced' or 'Cluster'
            status_model: pydantic model describing the status subresource
            short_names: kubectl short names
        """

        def decorator(model_class):
            if not hasattr(model_class, "__annotations__"):
                raise ValueError(
                    f"CRD model {model_class.__name__} must have type annotations"
                )

            model_class._crd_group = group
            model_class._crd_version = version
            model_class._crd_kind = kind
            model_class._crd_plural = plural or f"{kind.lower()}s"
            model_class._crd_scope = scope

            registry_instance = cls()
            key = f"{group}/{version}/{kind}"

            registry_instance._models[key] = {
                "model": model_class,
                "status_model": status_model,
                "group": group,
                "version": version,
                "kind": kind,
                "plural": model_class._crd_plural,
                "scope": scope,
                "singular": kind.lower(),
                "short_names": short_names or [],
            }

            logger.debug(f"Registered CRD: {key}")
            return model_class

        return decorator

    def discover_models(self, package_path="vaultkeeper.models"):
        """Import the models package so its decorators run."""
        try:
            importlib.import_module(package_path)
        except ImportError as e:
            logger.warning(f"Could not discover models in {package_path}: {e}")

    def get_all_models(self):
        """Get all registered CRD models."""
        return self._models.copy()

    def get_model_by_key(self, group, version, kind):
        """Get a specific CRD model by its key."""
        return self._models.get(f"{group}/{version}/{kind}")
