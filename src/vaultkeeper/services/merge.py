""" Schema-bounded merges of user overlays into generated pod specs.

Vault pod spec and container overlays override: every field the overlay
sets replaces the generated one, nested mappings merged key by key. The
configurer pod spec overlay is additive and only fills fields the
operator left empty.
"""

import copy
import logging

from vaultkeeper.errors import ValidationError

logger = logging.getLogger(__name__)

POD_SPEC_FIELDS = frozenset({
    "activeDeadlineSeconds",
    "affinity",
    "automountServiceAccountToken",
    "containers",
    "dnsConfig",
    "dnsPolicy",
    "enableServiceLinks",
    "ephemeralContainers",
    "hostAliases",
    "hostIPC",
    "hostNetwork",
    "hostPID",
    "hostUsers",
    "hostname",
    "imagePullSecrets",
    "initContainers",
    "nodeName",
    "nodeSelector",
    "os",
    "overhead",
    "preemptionPolicy",
    "priority",
    "priorityClassName",
    "readinessGates",
    "resourceClaims",
    "restartPolicy",
    "runtimeClassName",
    "schedulerName",
    "schedulingGates",
    "securityContext",
    "serviceAccount",
    "serviceAccountName",
    "setHostnameAsFQDN",
    "shareProcessNamespace",
    "subdomain",
    "terminationGracePeriodSeconds",
    "tolerations",
    "topologySpreadConstraints",
    "volumes",
})

CONTAINER_FIELDS = frozenset({
    "args",
    "command",
    "env",
    "envFrom",
    "image",
    "imagePullPolicy",
    "lifecycle",
    "livenessProbe",
    "name",
    "ports",
    "readinessProbe",
    "resizePolicy",
    "resources",
    "restartPolicy",
    "securityContext",
    "startupProbe",
    "stdin",
    "stdinOnce",
    "terminationMessagePath",
    "terminationMessagePolicy",
    "tty",
    "volumeDevices",
    "volumeMounts",
    "workingDir",
})


def _is_empty(value):
    return value is None or value == "" or value == [] or value == {}


def _check_fields(overlay, known, what):
    unknown = sorted(set(overlay) - known)
    if unknown:
        raise ValidationError(f"unknown {what} fields in overlay: {', '.join(unknown)}")


def _fill(base, overlay):
    for key, value in overlay.items():
        if _is_empty(base.get(key)):
            base[key] = copy.deepcopy(value)
        elif isinstance(base[key], dict) and isinstance(value, dict):
            _fill(base[key], value)
    return base


def _override(base, overlay):
    for key, value in overlay.items():
        if _is_empty(value):
            continue
        if isinstance(base.get(key), dict) and isinstance(value, dict):
            _override(base[key], value)
        else:
            base[key] = copy.deepcopy(value)
    return base


def merge_pod_spec(generated, overlay):
    """ Apply a pod spec overlay onto a generated pod spec.

    Fields the overlay sets win over generated ones; nested mappings are
    merged key by key so generated siblings survive. Empty overlay
    values leave the generated field alone.
    """
    if not overlay:
        return generated
    _check_fields(overlay, POD_SPEC_FIELDS, "PodSpec")
    return _override(copy.deepcopy(generated), overlay)


def fill_pod_spec(generated, overlay):
    """ Fill the fields of a generated pod spec that the overlay sets.

    Generated values always survive.
    """
    if not overlay:
        return generated
    _check_fields(overlay, POD_SPEC_FIELDS, "PodSpec")
    return _fill(copy.deepcopy(generated), overlay)


def merge_container(generated, overlay):
    """ Apply a container overlay, letting every set field win.
    """
    if not overlay:
        return generated
    _check_fields(overlay, CONTAINER_FIELDS, "Container")
    merged = copy.deepcopy(generated)
    for key, value in overlay.items():
        if not _is_empty(value):
            merged[key] = copy.deepcopy(value)
    return merged


def dedupe_by_name(*sources):
    """ Combine lists of named items; later entries win, result sorted by name.
    """
    by_name = {}
    for source in sources:
        for item in source or []:
            by_name[item["name"]] = item
    return [by_name[name] for name in sorted(by_name)]

