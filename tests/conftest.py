import copy
import itertools

import pytest
from kubernetes.client.exceptions import ApiException

from vaultkeeper.models.vault import API_VERSION, KIND, Vault

CLUSTER_SCOPED = {"Namespace"}


class FakeCluster:
    """In-memory stand-in for ClusterClient that behaves like the API server
    where the operator depends on it: resourceVersion checks, clusterIP
    allocation, 404 for missing namespaces."""

    def __init__(self, namespaces=("default",)):
        self.objects = {}
        self.namespaces = set(namespaces)
        self.writes = []
        self._versions = itertools.count(1)
        self._ips = itertools.count(1)

    @staticmethod
    def _key(api_version, kind, name, namespace):
        if kind in CLUSTER_SCOPED:
            namespace = None
        return (api_version, kind, namespace, name)

    def _body_key(self, body):
        metadata = body["metadata"]
        return self._key(body["apiVersion"], body["kind"], metadata["name"], metadata.get("namespace"))

    def add(self, body):
        """Seed an object without recording a write."""
        body = copy.deepcopy(body)
        metadata = body.setdefault("metadata", {})
        metadata["resourceVersion"] = str(next(self._versions))
        metadata.setdefault("uid", f"uid-{metadata['name']}")
        self.objects[self._body_key(body)] = body
        if body["kind"] == "Namespace":
            self.namespaces.add(metadata["name"])
        return copy.deepcopy(body)

    def writes_of(self, verb=None, kind=None):
        return [w for w in self.writes if (verb is None or w[0] == verb) and (kind is None or w[1] == kind)]

    def get(self, api_version, kind, name, namespace=None):
        obj = self.objects.get(self._key(api_version, kind, name, namespace))
        return copy.deepcopy(obj) if obj is not None else None

    def list(self, api_version, kind, namespace=None, label_selector=None):
        selector = {}
        for term in (label_selector or "").split(","):
            if term:
                key, value = term.split("=", 1)
                selector[key] = value
        items = []
        for (v, k, ns, _), obj in sorted(self.objects.items(), key=lambda i: str(i[0])):
            if v != api_version or k != kind:
                continue
            if namespace and ns != namespace:
                continue
            labels = obj["metadata"].get("labels") or {}
            if all(labels.get(key) == value for key, value in selector.items()):
                items.append(copy.deepcopy(obj))
        return items

    def create(self, body):
        body = copy.deepcopy(body)
        metadata = body["metadata"]
        namespace = metadata.get("namespace")
        if body["kind"] not in CLUSTER_SCOPED and namespace not in self.namespaces:
            raise ApiException(status=404, reason=f'namespaces "{namespace}" not found')
        key = self._body_key(body)
        if key in self.objects:
            raise ApiException(status=409, reason="AlreadyExists")
        metadata["resourceVersion"] = str(next(self._versions))
        metadata["uid"] = f"uid-{metadata['name']}"
        if body["kind"] == "Service" and not body["spec"].get("clusterIP"):
            body["spec"]["clusterIP"] = f"10.0.0.{next(self._ips)}"
        self.objects[key] = body
        self.writes.append(("create", body["kind"], namespace, metadata["name"]))
        return copy.deepcopy(body)

    def _check_current(self, body):
        key = self._body_key(body)
        current = self.objects.get(key)
        if current is None:
            raise ApiException(status=404, reason="NotFound")
        if body["metadata"].get("resourceVersion") != current["metadata"]["resourceVersion"]:
            raise ApiException(status=409, reason="Conflict")
        return key, current

    def update(self, body):
        body = copy.deepcopy(body)
        key, current = self._check_current(body)
        if body["kind"] == "Service":
            live_ip = current["spec"].get("clusterIP")
            if body["spec"].get("clusterIP") not in (None, "", live_ip):
                raise ApiException(status=422, reason="spec.clusterIP: field is immutable")
            body["spec"]["clusterIP"] = live_ip
        body["metadata"]["resourceVersion"] = str(next(self._versions))
        body["metadata"]["uid"] = current["metadata"]["uid"]
        if "status" in current:
            body["status"] = current["status"]
        self.objects[key] = body
        self.writes.append(("update", body["kind"], body["metadata"].get("namespace"), body["metadata"]["name"]))
        return copy.deepcopy(body)

    def delete(self, api_version, kind, name, namespace=None):
        key = self._key(api_version, kind, name, namespace)
        if key not in self.objects:
            raise ApiException(status=404, reason="NotFound")
        del self.objects[key]
        self.writes.append(("delete", kind, namespace, name))

    def update_status(self, body):
        key, current = self._check_current(body)
        current["status"] = copy.deepcopy(body.get("status"))
        current["metadata"]["resourceVersion"] = str(next(self._versions))
        self.writes.append(("status", body["kind"], body["metadata"].get("namespace"), body["metadata"]["name"]))
        return copy.deepcopy(current)


def vault_body(name="vault", namespace="default", **spec):
    """A Vault resource with file storage and TLS enabled unless overridden."""
    full_spec = {
        "size": 1,
        "config": {
            "storage": {"file": {"path": "/vault/file"}},
            "listener": {"tcp": {"address": "0.0.0.0:8200"}},
            "ui": True,
        },
    }
    full_spec.update(spec)
    return {
        "apiVersion": API_VERSION,
        "kind": KIND,
        "metadata": {"name": name, "namespace": namespace, "uid": f"uid-{name}"},
        "spec": full_spec,
    }


def raft_config(tls=True):
    config = {
        "storage": {"raft": {"path": "/vault/file"}},
        "listener": {"tcp": {"address": "0.0.0.0:8200"}},
        "api_addr": "https://vault.default:8200",
    }
    if not tls:
        config["listener"]["tcp"]["tls_disable"] = True
    return config


def make_vault(name="vault", namespace="default", **spec):
    return Vault.from_body(vault_body(name, namespace, **spec))


@pytest.fixture
def cluster():
    return FakeCluster()
