""" Idempotent create-or-update of desired objects.

The live object is compared against the desired one with a three-way
diff that also takes the last-applied copy into account, so fields the
API server fills in by itself never trigger an update.
"""

import copy
import json
import logging

logger = logging.getLogger(__name__)

LAST_APPLIED_ANNOTATION = "banzaicloud.com/last-applied"

# Server-managed metadata never compared against desired state.
SERVER_METADATA_FIELDS = (
    "resourceVersion",
    "uid",
    "creationTimestamp",
    "generation",
    "managedFields",
    "selfLink",
)

CREATED = "created"
UPDATED = "updated"
UNCHANGED = "unchanged"


def _merge_service(desired, current):
    """ Carry over what the API server owns on a Service.
    """
    desired_spec = desired.setdefault("spec", {})
    current_spec = current.get("spec") or {}
    if current_spec.get("clusterIP"):
        desired_spec["clusterIP"] = current_spec["clusterIP"]

    annotations = desired["metadata"].setdefault("annotations", {})
    for key, value in (current["metadata"].get("annotations") or {}).items():
        annotations.setdefault(key, value)

    if desired_spec.get("type") in ("NodePort", "LoadBalancer"):
        current_ports = current_spec.get("ports") or []
        for i, port in enumerate(desired_spec.get("ports") or []):
            if i < len(current_ports) and current_ports[i].get("nodePort"):
                port["nodePort"] = current_ports[i]["nodePort"]


PRE_MERGE_RULES = {
    ("v1", "Service"): _merge_service,
}


def _strip(obj):
    obj = copy.deepcopy(obj)
    obj.pop("status", None)
    metadata = obj.get("metadata") or {}
    for field in SERVER_METADATA_FIELDS:
        metadata.pop(field, None)
    annotations = metadata.get("annotations")
    if annotations is not None:
        annotations.pop(LAST_APPLIED_ANNOTATION, None)
        if not annotations:
            metadata.pop("annotations")
    return obj


def last_applied(obj):
    """ Serialized desired state as stored in the last-applied annotation.
    """
    return json.dumps(_strip(obj), sort_keys=True, separators=(",", ":"))


def set_last_applied(obj):
    annotations = obj["metadata"].setdefault("annotations", {})
    annotations[LAST_APPLIED_ANNOTATION] = last_applied(obj)


def _differs(desired, current):
    """ True when desired sets something current lacks or holds differently.
    """
    if isinstance(desired, dict) and isinstance(current, dict):
        return any(
            key not in current or _differs(value, current[key])
            for key, value in desired.items()
        )
    if isinstance(desired, list) and isinstance(current, list):
        return len(desired) != len(current) or any(
            _differs(d, c) for d, c in zip(desired, current)
        )
    return desired != current


def three_way_patch(original, desired, current):
    """ Compute the change needed to move current toward desired.

    original is the previously applied state (or None). Keys dropped
    from desired since the last apply are deleted with a None value;
    keys only the server set are left alone. Lists are replaced whole.
    """
    patch = {}
    original = original if isinstance(original, dict) else {}
    for key, value in desired.items():
        if key not in current:
            patch[key] = value
        elif isinstance(value, dict) and isinstance(current[key], dict):
            nested = three_way_patch(original.get(key), value, current[key])
            if nested:
                patch[key] = nested
        elif _differs(value, current[key]):
            patch[key] = value
    for key in original:
        if key not in desired and key in current:
            patch[key] = None
    return patch


class ObjectApplier:
    """ Create or update objects so that repeated applies are no-ops.
    """

    def __init__(self, cluster, log=None):
        self.cluster = cluster
        self.log = log or logger

    def apply(self, desired):
        """ Converge one object; returns CREATED, UPDATED or UNCHANGED.
        """
        desired = copy.deepcopy(desired)
        metadata = desired["metadata"]
        ref = f"{desired['kind']} {metadata.get('namespace')}/{metadata['name']}"

        current = self.cluster.get(
            desired["apiVersion"], desired["kind"], metadata["name"], metadata.get("namespace")
        )
        if current is None:
            set_last_applied(desired)
            self.cluster.create(desired)
            self.log.info(f"Created {ref}")
            return CREATED

        pre_merge = PRE_MERGE_RULES.get((desired["apiVersion"], desired["kind"]))
        if pre_merge is not None:
            pre_merge(desired, current)

        resource_version = current["metadata"].get("resourceVersion")
        try:
            annotation = (current["metadata"].get("annotations") or {}).get(
                LAST_APPLIED_ANNOTATION
            )
            original = json.loads(annotation) if annotation else None
            patch = three_way_patch(original, _strip(desired), _strip(current))
        except (ValueError, TypeError) as e:
            self.log.error(f"Failed to calculate patch for {ref}, moving on to update: {e}")
            metadata["resourceVersion"] = resource_version
            self.cluster.update(desired)
            return UPDATED

        if not patch:
            self.log.debug(f"Skipping update for {ref}")
            return UNCHANGED

        self.log.debug(f"Resource update for {ref}: {json.dumps(patch, sort_keys=True)}")
        set_last_applied(desired)
        metadata["resourceVersion"] = resource_version
        self.cluster.update(desired)
        self.log.info(f"Updated {ref}")
        return UPDATED
