""" Thin dict-in, dict-out wrapper over the kubernetes dynamic client.
"""

import logging

import kubernetes
from kubernetes.client.exceptions import ApiException
from kubernetes.dynamic import DynamicClient

logger = logging.getLogger(__name__)


class ClusterClient:
    """ Read and write arbitrary Kubernetes objects as plain dicts.

    Every call addresses objects by (apiVersion, kind), so builders can
    hand over manifests without knowing which typed API serves them.
    """

    def __init__(self, dynamic_client=None):
        if dynamic_client is None:
            dynamic_client = DynamicClient(kubernetes.client.ApiClient())
        self.dynamic = dynamic_client

    def _resource(self, api_version, kind):
        return self.dynamic.resources.get(api_version=api_version, kind=kind)

    def get(self, api_version, kind, name, namespace=None):
        """ Return the live object, or None when it does not exist.
        """
        try:
            obj = self._resource(api_version, kind).get(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return obj.to_dict()

    def list(self, api_version, kind, namespace=None, label_selector=None):
        kwargs = {}
        if namespace:
            kwargs["namespace"] = namespace
        if label_selector:
            kwargs["label_selector"] = label_selector
        result = self._resource(api_version, kind).get(**kwargs)
        return result.to_dict().get("items") or []

    def create(self, body):
        metadata = body["metadata"]
        created = self._resource(body["apiVersion"], body["kind"]).create(
            body=body, namespace=metadata.get("namespace")
        )
        logger.debug(f"Created {body['kind']} {metadata.get('namespace')}/{metadata['name']}")
        return created.to_dict()

    def update(self, body):
        metadata = body["metadata"]
        updated = self._resource(body["apiVersion"], body["kind"]).replace(
            body=body, name=metadata["name"], namespace=metadata.get("namespace")
        )
        logger.debug(f"Replaced {body['kind']} {metadata.get('namespace')}/{metadata['name']}")
        return updated.to_dict()

    def delete(self, api_version, kind, name, namespace=None):
        self._resource(api_version, kind).delete(name=name, namespace=namespace)

    def update_status(self, body):
        """ Replace the status subresource of a custom object.
        """
        metadata = body["metadata"]
        resource = self._resource(body["apiVersion"], body["kind"])
        updated = resource.status.replace(
            body=body, name=metadata["name"], namespace=metadata.get("namespace")
        )
        return updated.to_dict()


def label_selector(labels):
    """ Render a label mapping as a Kubernetes equality selector string.
    """
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))
