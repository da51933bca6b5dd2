"""A demonstration scheduler plugin showing each extension point of a scheduling cycle."""

from __future__ import annotations

from collections.abc import Callable, Mapping, MutableMapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import ROUND_CEILING, Decimal, InvalidOperation
from typing import Any

from carina import log
from carina.localstorage import Code, Status, parse_quantity

EXAMPLE_NAME = "Example-schedule"
STATE_KEY = "example"
MIN_NODE_SCORE = 0
MAX_NODE_SCORE = 100
PERMIT_WAIT = timedelta(seconds=360)


@dataclass
class NodeInfo:
    """What the scheduler snapshot knows about a node."""

    name: str
    allocatable_memory: int = 0
    pods: list[Any] = field(default_factory=list)


@dataclass
class NodeScore:
    """The score a node received in the current cycle."""

    name: str
    score: int


@dataclass
class QueuedPodInfo:
    """A pod waiting in the scheduling queue."""

    pod: Mapping[str, Any]
    timestamp: datetime


@dataclass
class StateStorage:
    """Summed resource requests of a pod, shared between plugin steps."""

    milli_cpu: int = 0
    memory: int = 0
    ephemeral_storage: int = 0
    allowed_pod_number: int = 0
    scalar_resources: dict[str, int] = field(default_factory=dict)

    def add(self, requests: Mapping[str, Any]) -> None:
        """Add a container's resource requests."""
        for resource, quantity in requests.items():
            if resource == "cpu":
                self.milli_cpu += _milli_value(quantity)
            elif resource == "memory":
                self.memory += parse_quantity(quantity)
            elif resource == "ephemeral-storage":
                self.ephemeral_storage += parse_quantity(quantity)
            elif resource == "pods":
                self.allowed_pod_number += parse_quantity(quantity)
            else:
                self.scalar_resources[resource] = (
                    self.scalar_resources.get(resource, 0) + parse_quantity(quantity)
                )


def _milli_value(quantity: Any) -> int:
    if quantity is None:
        return 0
    if isinstance(quantity, int) and not isinstance(quantity, bool):
        return quantity * 1000
    text = str(quantity).strip()
    try:
        if text.endswith("m"):
            number = Decimal(text[:-1])
        else:
            number = Decimal(text) * 1000
    except InvalidOperation:
        return parse_quantity(text) * 1000
    return int(number.to_integral_value(rounding=ROUND_CEILING))


def _nested(obj: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(obj, Mapping):
            return None
        obj = obj.get(key)
    return obj


def _containers(pod: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    return list(_nested(pod, "spec", "containers") or [])


def _requests(container: Mapping[str, Any]) -> Mapping[str, Any]:
    return _nested(container, "resources", "requests") or {}


def _creation_time(pod: Mapping[str, Any]) -> datetime | None:
    value = _nested(pod, "metadata", "creationTimestamp")
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        stamp = value
    else:
        stamp = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return stamp


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ExamplePlugin:
    """Queue-sort, filter, score and permit plugin used as a template.

    ``node_infos`` is the node snapshot of the current cycle, keyed by node name;
    ``clock`` returns the current, timezone-aware time.
    """

    def __init__(
        self,
        node_infos: Mapping[str, NodeInfo] | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.node_infos: dict[str, NodeInfo] = dict(node_infos or {})
        self._clock = clock

    def name(self) -> str:
        return EXAMPLE_NAME

    def less(self, pod_info1: QueuedPodInfo, pod_info2: QueuedPodInfo) -> bool:
        """Queue ordering: compares the first pod's timestamp with itself, so never true."""
        return pod_info1.timestamp < pod_info1.timestamp

    def pre_filter(self, state: MutableMapping[str, Any], pod: Mapping[str, Any]) -> Status:
        """Record the pod's summed requests in ``state`` and reject pods meant for other schedulers."""
        storage = StateStorage()
        for container in _containers(pod):
            storage.add(_requests(container))
        state[STATE_KEY] = storage

        scheduler_name = _nested(pod, "spec", "schedulerName") or ""
        if scheduler_name != EXAMPLE_NAME:
            return Status(Code.UNSCHEDULABLE, f"rejected schedule {scheduler_name}")
        return Status()

    def filter(self, state: Mapping[str, Any], pod: Mapping[str, Any], node: NodeInfo) -> Status:
        """Reject the node if any container asks for more memory than the node can allocate."""
        log.debug("filter pod: %s, node: %s", _nested(pod, "metadata", "name"), node.name)
        for container in _containers(pod):
            if parse_quantity(_requests(container).get("memory")) > node.allocatable_memory:
                return Status(Code.UNSCHEDULABLE, "out of memory")
        return Status()

    def post_filter(self, state: MutableMapping[str, Any], pod: Mapping[str, Any]) -> Status:
        """Drop the state left by pre_filter; a pod that left state is unschedulable."""
        log.debug("collect info for scheduling pod: %s", _nested(pod, "metadata", "name"))
        if STATE_KEY in state:
            del state[STATE_KEY]
            return Status(Code.UNSCHEDULABLE)
        return Status()

    def score(
        self, state: Mapping[str, Any], pod: Mapping[str, Any], node_name: str
    ) -> tuple[int, Status]:
        """Score a node by the number of pods it already runs."""
        node_info = self.node_infos.get(node_name)
        if node_info is None:
            return 0, Status(
                Code.ERROR,
                f'getting node "{node_name}" from Snapshot: nodeinfo not found for node name "{node_name}"',
            )
        return len(node_info.pods), Status()

    def normalize_score(
        self, state: Mapping[str, Any], pod: Mapping[str, Any], scores: list[NodeScore]
    ) -> Status:
        """Rescale ``scores`` in place to the range MIN_NODE_SCORE..MAX_NODE_SCORE."""
        if not scores:
            return Status()
        highest = max(node_score.score for node_score in scores)
        lowest = min(node_score.score for node_score in scores)
        old_range = highest - lowest
        new_range = MAX_NODE_SCORE - MIN_NODE_SCORE
        for node_score in scores:
            if old_range == 0:
                node_score.score = MIN_NODE_SCORE
            else:
                scaled = (node_score.score - lowest) * new_range
                node_score.score = int(scaled / old_range) + MIN_NODE_SCORE
        return Status()

    def permit(
        self, state: Mapping[str, Any], pod: Mapping[str, Any], node_name: str
    ) -> tuple[Status, timedelta]:
        """Hold pods created less than six minutes ago; return how old the pod is while waiting."""
        created = _creation_time(pod)
        if created is None:
            return Status(), timedelta(0)
        age = self._clock() - created
        if age < PERMIT_WAIT:
            return Status(Code.WAIT), age
        return Status(), timedelta(0)