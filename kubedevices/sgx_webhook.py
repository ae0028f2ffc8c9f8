"""Admission mutation of pods that request SGX enclave page cache."""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from typing import Any

from kubedevices.containers import (
    Container,
    Quantity,
    ResourceError,
    format_binary_si,
    get_requested_resources,
    parse_quantity,
)

NAMESPACE = "sgx.intel.com"
ENCLAVE = NAMESPACE + "/enclave"
EPC = NAMESPACE + "/epc"
PROVISION = NAMESPACE + "/provision"
QUOTE_PROVIDER_ANNOTATION = NAMESPACE + "/quote-provider"
AESMD_QUOTE_PROVIDER = "aesmd"

_AESMD_VOLUME = "aesmd-socket"
_AESMD_DIR = "/var/run/aesmd"

_BAD_REQUEST = 400
_INTERNAL_ERROR = 500
_OK = 200


@dataclass
class AdmissionResponse:
    """Outcome of an admission review: a JSON patch or an error."""

    allowed: bool
    code: int = _OK
    message: str = ""
    patch: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def get_aesmd_volume(
    needs_aesmd: bool, epc_user_count: int, aesmd_present: bool
) -> dict[str, Any] | None:
    """The volume carrying the aesmd socket, or None if the pod needs none."""
    if epc_user_count == 0 or not needs_aesmd:
        return None
    if aesmd_present and epc_user_count >= 2:
        # aesmd runs as a sidecar: share its socket through an in-memory emptyDir.
        return {"name": _AESMD_VOLUME, "emptyDir": {"medium": "Memory"}}
    # aesmd runs as a DaemonSet: mount its socket directory from the host.
    return {
        "name": _AESMD_VOLUME,
        "hostPath": {"path": _AESMD_DIR, "type": "DirectoryOrCreate"},
    }


def warn_wrong_resources(resources: dict[str, int]) -> list[str]:
    """Warnings for SGX resources that pods must not request directly."""
    return [
        f"{name} should not be used in Pod spec directly"
        for name in (ENCLAVE, PROVISION)
        if name in resources
    ]


def _quantity(value: Any) -> Quantity:
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ResourceError(f"invalid quantity: {value!r}")
    return parse_quantity(str(value))


def _container_from_dict(data: dict[str, Any]) -> Container:
    resources = data.get("resources") or {}
    return Container(
        name=data.get("name") or "",
        limits={k: _quantity(v) for k, v in (resources.get("limits") or {}).items()},
        requests={k: _quantity(v) for k, v in (resources.get("requests") or {}).items()},
    )


def mutate_pod(pod: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
    """Return a mutated copy of a pod and the warnings found while mutating it."""
    if not isinstance(pod, dict):
        raise ResourceError("pod must be a JSON object")
    pod = copy.deepcopy(pod)
    metadata = pod.get("metadata") or {}
    annotations = metadata.get("annotations") or {}
    quote_provider = annotations.get(QUOTE_PROVIDER_ANNOTATION, "")
    spec = pod.get("spec") or {}

    total_epc = 0
    epc_user_count = 0
    aesmd_present = False
    warnings: list[str] = []

    for container in spec.get("containers") or []:
        requested = get_requested_resources(_container_from_dict(container), NAMESPACE)
        warnings.extend(warn_wrong_resources(requested))
        if EPC not in requested:
            continue
        total_epc += requested[EPC]

        name = container.get("name") or ""
        resources = container["resources"]
        added = [PROVISION, ENCLAVE] if quote_provider == name else [ENCLAVE]
        for resource in added:
            resources["limits"][resource] = "1"
            resources["requests"][resource] = "1"

        epc_user_count += 1

        if quote_provider == AESMD_QUOTE_PROVIDER:
            container["volumeMounts"] = [
                *(container.get("volumeMounts") or []),
                {"name": _AESMD_VOLUME, "mountPath": _AESMD_DIR},
            ]
            if name == AESMD_QUOTE_PROVIDER:
                aesmd_present = True
            # Also set for aesmd itself, which is harmless.
            container["env"] = [
                *(container.get("env") or []),
                {"name": "SGX_AESM_ADDR", "value": "1"},
            ]

    volume = get_aesmd_volume(
        quote_provider == AESMD_QUOTE_PROVIDER, epc_user_count, aesmd_present
    )
    if volume is not None:
        spec["volumes"] = [*(spec.get("volumes") or []), volume]
        pod["spec"] = spec

    if total_epc:
        annotations[EPC] = format_binary_si(total_epc)
        metadata["annotations"] = annotations
        pod["metadata"] = metadata

    return pod, warnings


def _escape(key: Any) -> str:
    return str(key).replace("~", "~0").replace("/", "~1")


def _diff(old: Any, new: Any, path: str, ops: list[dict[str, Any]]) -> None:
    if isinstance(old, dict) and isinstance(new, dict):
        for key in old:
            if key not in new:
                ops.append({"op": "remove", "path": f"{path}/{_escape(key)}"})
        for key, value in new.items():
            child = f"{path}/{_escape(key)}"
            if key in old:
                _diff(old[key], value, child, ops)
            else:
                ops.append({"op": "add", "path": child, "value": copy.deepcopy(value)})
    elif isinstance(old, list) and isinstance(new, list):
        common = min(len(old), len(new))
        for i, (a, b) in enumerate(zip(old[:common], new[:common])):
            _diff(a, b, f"{path}/{i}", ops)
        for i in reversed(range(common, len(old))):
            ops.append({"op": "remove", "path": f"{path}/{i}"})
        for i in range(common, len(new)):
            ops.append({"op": "add", "path": f"{path}/{i}", "value": copy.deepcopy(new[i])})
    elif type(old) is not type(new) or old != new:
        ops.append({"op": "replace", "path": path, "value": copy.deepcopy(new)})


def json_patch(original: Any, modified: Any) -> list[dict[str, Any]]:
    """RFC 6902 operations that turn ``original`` into ``modified``."""
    ops: list[dict[str, Any]] = []
    _diff(original, modified, "", ops)
    return ops


def _decode(raw: bytes | str) -> dict[str, Any]:
    pod = json.loads(raw)
    if not isinstance(pod, dict):
        raise ValueError("pod must be a JSON object")
    spec = pod.get("spec") or {}
    if not isinstance(spec, dict):
        raise ValueError("pod spec must be a JSON object")
    containers = spec.get("containers") or []
    if not isinstance(containers, list) or not all(isinstance(c, dict) for c in containers):
        raise ValueError("pod containers must be a list of objects")
    for container in containers:
        _container_from_dict(container)
    return pod


def handle(raw: bytes | str) -> AdmissionResponse:
    """Review a pod given as raw JSON and answer with a patch or an error."""
    try:
        pod = _decode(raw)
    except (ValueError, AttributeError) as err:
        return AdmissionResponse(allowed=False, code=_BAD_REQUEST, message=str(err))

    try:
        mutated, warnings = mutate_pod(pod)
    except ResourceError as err:
        return AdmissionResponse(allowed=False, code=_INTERNAL_ERROR, message=str(err))

    return AdmissionResponse(allowed=True, patch=json_patch(pod, mutated), warnings=warnings)