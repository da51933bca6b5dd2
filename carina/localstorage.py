"""Scheduler plugin that filters and scores nodes by their local storage capacity."""

from __future__ import annotations

import enum
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from decimal import ROUND_CEILING, Decimal, InvalidOperation
from typing import Any, ClassVar, Optional, Protocol

from carina import log
from carina.configuration import SCHEDULER_BINPACK, SCHEDULER_SPREADOUT, SchedulerConfig
from carina.constants import (
    CSI_PLUGIN_NAME,
    DEVICE_CAPACITY_KEY_PREFIX,
    DEVICE_DISK_KEY,
    EXCLUSIVITY_DISK,
    VOLUME_BACKEND_DISK_TYPE,
    VOLUME_CACHE_DISK_RATIO,
    VOLUME_CACHE_DISK_TYPE,
    VOLUME_DEVICE_NODE,
)

NAME = "local-storage"
MAX_SCORE = 10
NODE_STORAGE_RESOURCES = "nodestorageresources"
LOGIC_VOLUMES = "logicvolumes"
CLAIM_BOUND = "Bound"

_RATIO_ERROR = "carina.storage.io/cache-disk-ratio should be in 1-100"
_INSUFFICIENT = "node storage resource insufficient"


class Lister(Protocol):
    """A cache of objects; ``get`` raises LookupError for unknown names."""

    def get(self, name: str) -> Any: ...

    def list(self) -> list[Any]: ...


class DynamicClient(Protocol):
    """Direct access to the API server for a resource kind."""

    def get(self, resource: str, name: str) -> Any: ...

    def list(self, resource: str) -> Any: ...


class Code(enum.IntEnum):
    SUCCESS = 0
    ERROR = 1
    UNSCHEDULABLE = 2
    UNSCHEDULABLE_AND_UNRESOLVABLE = 3
    WAIT = 4
    SKIP = 5


@dataclass(frozen=True)
class Status:
    """Outcome of a plugin step."""

    code: Code = Code.SUCCESS
    message: str = ""

    def is_success(self) -> bool:
        return self.code is Code.SUCCESS


@dataclass
class PvcRequest:
    """Bytes requested by one claim and whether it needs a whole raw disk."""

    exclusive: bool
    request: int


_QUANTITY = re.compile(
    r"^([+-]?)(\d+(?:\.\d*)?|\.\d+)(?:(Ki|Mi|Gi|Ti|Pi|Ei)|([eE][+-]?\d+)|(n|u|m|k|M|G|T|P|E)?)$"
)
_BINARY = {"Ki": 2**10, "Mi": 2**20, "Gi": 2**30, "Ti": 2**40, "Pi": 2**50, "Ei": 2**60}
_DECIMAL = {
    "n": Decimal("1e-9"),
    "u": Decimal("1e-6"),
    "m": Decimal("1e-3"),
    "k": Decimal(10) ** 3,
    "M": Decimal(10) ** 6,
    "G": Decimal(10) ** 9,
    "T": Decimal(10) ** 12,
    "P": Decimal(10) ** 15,
    "E": Decimal(10) ** 18,
}


def parse_quantity(value: str | int | float | None) -> int:
    """Return the integer value of a resource quantity such as "3Gi", rounded up."""
    if value is None:
        return 0
    if isinstance(value, bool):
        raise ValueError(f"invalid quantity: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        number = Decimal(str(value))
    else:
        match = _QUANTITY.match(value.strip())
        if not match:
            raise ValueError(f"quantities must match the regular expression: {value!r}")
        sign, digits, binary, exponent, decimal_suffix = match.groups()
        try:
            number = Decimal(digits)
        except InvalidOperation:
            raise ValueError(f"invalid quantity: {value!r}") from None
        if binary:
            number *= _BINARY[binary]
        elif exponent:
            number *= Decimal(10) ** int(exponent[1:])
        elif decimal_suffix:
            number *= _DECIMAL[decimal_suffix]
        if sign == "-":
            number = -number
    return int(number.to_integral_value(rounding=ROUND_CEILING))


def _to_gib(request_bytes: int) -> int:
    return ((request_bytes - 1) >> 30) + 1


def _nested(obj: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(obj, Mapping):
            return None
        obj = obj.get(key)
    return obj


def _as_object(obj: Any, node_name: str) -> dict[str, Any]:
    if not isinstance(obj, Mapping):
        log.error("Failed to convert unstructured from runtime object, name: %s", node_name)
        raise TypeError(f"cannot convert {type(obj).__name__} to an unstructured object")
    return dict(obj)


def minimum_value_minus(array: list[int], pvc_request: PvcRequest) -> int:
    """Take the request from the smallest capacity that can hold it.

    ``array`` holds capacities in GiB; it is sorted in place and the chosen
    entry is reduced (or zeroed for an exclusive request). Returns the index
    of that entry, or -1 when none is large enough.
    """
    array.sort()
    request_gb = _to_gib(pvc_request.request)
    index = next((i for i, capacity in enumerate(array) if capacity >= request_gb), -1)
    if index < 0:
        return index
    if pvc_request.exclusive:
        array[index] = 0
    else:
        array[index] -= request_gb
    return index


def get_node_storage_resource(client: DynamicClient, nsr_lister: Lister, node_name: str) -> dict[str, Any]:
    """Return the NodeStorageResource of a node, from the cache or else from the API server."""
    try:
        obj = nsr_lister.get(node_name)
    except Exception as exc:  # noqa: BLE001 - any cache failure falls back to the server
        log.warn(
            "Failed to get nsr from cache, name: %s. Error: %s. Fall back to call api server",
            node_name,
            exc,
        )
        try:
            obj = client.get(NODE_STORAGE_RESOURCES, node_name)
        except Exception as server_exc:
            log.error("Failed to get workload from api server, name: %s. Error: %s", node_name, server_exc)
            raise
    return _as_object(obj, node_name)


def get_lv_exclusivity_disks(client: DynamicClient, lv_lister: Lister, node_name: str) -> list[str]:
    """Return the device groups on ``node_name`` that a logic volume holds exclusively."""
    try:
        objects = lv_lister.list()
    except Exception as exc:  # noqa: BLE001 - any cache failure falls back to the server
        log.warn(
            "Failed to get lvs from cache, name: %s. Error: %s. Fall back to call api server",
            node_name,
            exc,
        )
        try:
            listing = client.list(LOGIC_VOLUMES)
        except Exception as server_exc:
            log.error("Failed to get workload from api server, name: %s. Error: %s", node_name, server_exc)
            raise
        listing = _as_object(listing, node_name)
        lvs = [_as_object(item, node_name) for item in listing.get("items") or []]
    else:
        if not objects:
            return []
        lvs = [_as_object(obj, node_name) for obj in objects]

    log.debug("Get logic volumes: %s", lvs)
    groups: list[str] = []
    for lv in lvs:
        annotations = _nested(lv, "metadata", "annotations")
        if not annotations:
            continue
        lv_node = _nested(lv, "spec", "nodeName") or ""
        if lv_node == node_name and annotations.get(EXCLUSIVITY_DISK) == "true":
            groups.append(_nested(lv, "spec", "deviceGroup") or "")
    return groups


@dataclass
class LocalStorage:
    """Filter and score plugin for pods that claim carina volumes.

    Pods, claims, storage classes and volumes are plain API objects
    (mappings). Claims are looked up by "namespace/name".
    """

    # This plugin leaves node scores as they are; no normaliser is offered.
    score_normalizer: ClassVar[Optional[Callable[..., Status]]] = None

    config: SchedulerConfig
    pvc_lister: Lister
    sc_lister: Lister
    pv_lister: Lister
    lv_lister: Lister
    nsr_lister: Lister
    client: DynamicClient

    def name(self) -> str:
        return NAME

    def filter(self, pod: Mapping[str, Any], node_name: str) -> Status:
        """Reject ``node_name`` if it cannot hold the pod's pending claims."""
        pod_name = _nested(pod, "metadata", "name") or ""
        log.debug("filter pod: %s, node: %s", pod_name, node_name)
        try:
            request_map, bound_node, use_raw = self._pvc_request_map(pod)
        except Exception as exc:  # noqa: BLE001 - reported through the status
            log.debug("failed to get pvc/sc, pod: %s, node: %s, err: %s", pod_name, node_name, exc)
            return Status(Code.ERROR, str(exc))

        if bound_node and bound_node != node_name:
            log.debug("mismatch pod: %s, node: %s", pod_name, node_name)
            return Status(Code.UNSCHEDULABLE_AND_UNRESOLVABLE, "pv node mismatch")
        if not request_map:
            return Status()

        try:
            allocatable = self._allocatable_map(use_raw, pod_name, node_name)
        except Exception as exc:  # noqa: BLE001 - reported through the status
            return Status(Code.UNSCHEDULABLE_AND_UNRESOLVABLE, str(exc))

        for group, requests in request_map.items():
            requests.sort(key=lambda r: r.request, reverse=True)
            if self.config.check_raw_device_group(group):
                capacities = [value for lv_group, value in allocatable.items() if group in lv_group]
                for request in requests:
                    if minimum_value_minus(capacities, request) < 0:
                        log.debug("mismatch pod: %s, node: %s, scDeviceGroup: %s", pod_name, node_name, group)
                        return Status(Code.UNSCHEDULABLE_AND_UNRESOLVABLE, _INSUFFICIENT)
            else:
                total_gb = _to_gib(sum(r.request for r in requests))
                available = allocatable.get(group, 0)
                if total_gb > available:
                    log.debug(
                        "mismatch pod: %s, node: %s, request: %d, scDeviceGroup:%s, allocatable: %d",
                        pod_name, node_name, total_gb, group, available,
                    )
                    return Status(Code.UNSCHEDULABLE_AND_UNRESOLVABLE, _INSUFFICIENT)

        log.debug("filter success pod: %s, node: %s", pod_name, node_name)
        return Status()

    def score(self, pod: Mapping[str, Any], node_name: str) -> tuple[int, Status]:
        """Score ``node_name`` from 0 to MAX_SCORE by the capacity the pod would use."""
        pod_name = _nested(pod, "metadata", "name") or ""
        log.debug("score pod: %s, node: %s", pod_name, node_name)
        try:
            request_map, bound_node, use_raw = self._pvc_request_map(pod)
        except Exception as exc:  # noqa: BLE001 - reported through the status
            log.debug("failed to get pvc/sc, pod: %s, node: %s, err: %s", pod_name, node_name, exc)
            return 0, Status(Code.UNSCHEDULABLE_AND_UNRESOLVABLE, str(exc))

        if bound_node == node_name:
            return MAX_SCORE, Status()
        if not request_map:
            return 5, Status()

        try:
            allocatable = self._allocatable_map(use_raw, pod_name, node_name)
        except Exception as exc:  # noqa: BLE001 - reported through the status
            return 0, Status(Code.UNSCHEDULABLE_AND_UNRESOLVABLE, str(exc))

        strategy = self.config.scheduler_strategy()
        total_score = 0.0
        for group, requests in request_map.items():
            total_gb = _to_gib(sum(r.request for r in requests))
            if self.config.check_raw_device_group(group):
                available = sum(value for lv_group, value in allocatable.items() if group in lv_group)
            else:
                available = allocatable.get(group, 0)
            used = total_gb / available if available > 0 else 1.0
            if strategy == SCHEDULER_SPREADOUT:
                total_score += 1.0 - used
            elif strategy == SCHEDULER_BINPACK:
                total_score += used

        result = int(total_score / len(request_map) * MAX_SCORE)
        log.debug("score pod: %s, node: %s, score: %d", pod_name, node_name, result)
        return result, Status()

    def score_extensions(self) -> Optional[Callable[..., Status]]:
        """Return the score normaliser of this plugin; it has none."""
        return self.score_normalizer

    def _pvc_request_map(
        self, pod: Mapping[str, Any]
    ) -> tuple[dict[str, list[PvcRequest]], str, bool]:
        node_name = ""
        request_map: dict[str, list[PvcRequest]] = {}
        use_raw = False
        exclusive = False
        namespace = _nested(pod, "metadata", "namespace") or ""
        for volume in _nested(pod, "spec", "volumes") or []:
            claim = volume.get("persistentVolumeClaim")
            if not claim:
                continue
            pvc = self.pvc_lister.get(f"{namespace}/{claim.get('claimName', '')}")

            sc_name = _nested(pvc, "spec", "storageClassName")
            if sc_name is None:
                continue
            sc = self.sc_lister.get(sc_name)
            if sc.get("provisioner") != CSI_PLUGIN_NAME:
                continue

            # A claim already bound pins the pod to the node of its volume.
            if _nested(pvc, "status", "phase") == CLAIM_BOUND:
                pv = self.pv_lister.get(_nested(pvc, "spec", "volumeName") or "")
                attributes = _nested(pv, "spec", "csi", "volumeAttributes") or {}
                pv_node = attributes.get(VOLUME_DEVICE_NODE, "")
                if not node_name:
                    node_name = pv_node
                elif node_name != pv_node:
                    raise ValueError("pvc node clash")
                continue

            params = sc.get("parameters") or {}
            device_group = params.get(DEVICE_DISK_KEY, "")
            if self.config.check_raw_device_group(device_group):
                use_raw = True
            if not device_group:
                device_group = params.get(VOLUME_BACKEND_DISK_TYPE, "")

            storage = parse_quantity(_nested(pvc, "spec", "resources", "requests", "storage"))
            cache_group = params.get(VOLUME_CACHE_DISK_TYPE, "")
            if cache_group:
                cache_group = self.config.get_device_group(device_group)
                ratio_text = params.get(VOLUME_CACHE_DISK_RATIO, "")
                if not re.fullmatch(r"[+-]?\d+", ratio_text):
                    raise ValueError(_RATIO_ERROR)
                ratio = int(ratio_text)
                if ratio < 1 or ratio >= 100:
                    raise ValueError(_RATIO_ERROR)
                cache_request = PvcRequest(False, storage * ratio // 100)
                request_map[cache_group] = [*request_map.get(cache_group, []), cache_request]

            if not device_group:
                name = _nested(sc, "metadata", "name") or ""
                raise ValueError("not set deviceGroup in storageClass " + name)
            device_group = self.config.get_device_group(device_group)
            if params.get(EXCLUSIVITY_DISK) == "true":
                exclusive = True
            request_map[device_group] = [*request_map.get(cache_group, []), PvcRequest(exclusive, storage)]

        log.debug("pvcRequestMap: %s, node: %s, useRaw: %s", request_map, node_name, use_raw)
        return request_map, node_name, use_raw

    def _allocatable_map(self, use_raw: bool, pod_name: str, node_name: str) -> dict[str, int]:
        exclusive_groups: list[str] = []
        if use_raw:
            try:
                exclusive_groups = get_lv_exclusivity_disks(self.client, self.lv_lister, node_name)
            except Exception as exc:
                log.debug("Failed to obtain node lvs, pod: %s node: %s, err: %s", pod_name, node_name, exc)
                raise RuntimeError(f"failed to obtain node lvs, {exc}") from exc

        try:
            nsr = get_node_storage_resource(self.client, self.nsr_lister, node_name)
        except Exception as exc:
            log.debug("Failed to obtain node storages, pod: %s node: %s, err: %s", pod_name, node_name, exc)
            raise RuntimeError(f"Failed to obtain node storages, {exc}") from exc

        allocatable: dict[str, int] = {}
        for key, value in (_nested(nsr, "status", "allocatable") or {}).items():
            if not key.startswith(DEVICE_CAPACITY_KEY_PREFIX):
                continue
            lv_group = key[len(DEVICE_CAPACITY_KEY_PREFIX):]
            if self.config.check_raw_device_group(lv_group.split("/")[0]) and lv_group in exclusive_groups:
                continue
            allocatable[lv_group] = parse_quantity(value)
        log.debug("allocatableMap: %s", allocatable)

        if not allocatable:
            log.debug("can't get device allocatableMap, pod: %s, node: %s", pod_name, node_name)
            raise RuntimeError("can't get device allocatableMap")
        return allocatable