"""Block I/O throttling of pods through cgroup v1 blkio or cgroup v2 io.max."""

from __future__ import annotations

import enum
import os
import posixpath
from dataclasses import dataclass, field
from pathlib import Path

from carina.utils import dir_exists, file_exists

BLKIO_THROTTLE_READ_BPS = "blkio.throttle.read_bps_device"
BLKIO_THROTTLE_READ_IOPS = "blkio.throttle.read_iops_device"
BLKIO_THROTTLE_WRITE_BPS = "blkio.throttle.write_bps_device"
BLKIO_THROTTLE_WRITE_IOPS = "blkio.throttle.write_iops_device"
CGROUPV2_BLKIO_THROTTLE = "io.max"
ROOT_CGROUP = "/sys/fs/cgroup"


class CgroupDriver(str, enum.Enum):
    CGROUPFS = "cgroupfs"
    SYSTEMD = "systemd"


class PodQOSClass(str, enum.Enum):
    GUARANTEED = "Guaranteed"
    BURSTABLE = "Burstable"
    BEST_EFFORT = "BestEffort"


@dataclass
class IOLimit:
    """Read/write limits of one device; 0 means unlimited."""

    rbps: int = 0
    riops: int = 0
    wbps: int = 0
    wiops: int = 0


@dataclass
class PodBlkIO:
    """The I/O limits of a pod, keyed by device number ("major:minor")."""

    pod_uid: str
    pod_qos: PodQOSClass
    device_io_set: dict[str, IOLimit] = field(default_factory=dict)


def supported_io_throttles() -> list[str]:
    """Return the cgroup v1 throttle files in the order they are written."""
    return [
        BLKIO_THROTTLE_READ_BPS,
        BLKIO_THROTTLE_READ_IOPS,
        BLKIO_THROTTLE_WRITE_BPS,
        BLKIO_THROTTLE_WRITE_IOPS,
    ]


def _join(*elements: str) -> str:
    """Join slash-separated path elements, ignoring empty ones, and clean the result."""
    joined = "/".join(element for element in elements if element)
    if not joined:
        return ""
    cleaned = posixpath.normpath(joined)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def expand_slice(slice_name: str) -> str:
    """Expand a systemd slice name such as "a-b.slice" to "/a.slice/a-b.slice"."""
    suffix = ".slice"
    if not slice_name.endswith(suffix) or "/" in slice_name:
        raise ValueError(f"invalid slice name: {slice_name}")
    stem = slice_name[: -len(suffix)]
    if stem == "-":
        return "/"
    path = ""
    prefix = ""
    for component in stem.split("-"):
        if not component:
            raise ValueError(f"invalid slice name: {slice_name}")
        path += "/" + prefix + component + suffix
        prefix += component + "-"
    return path


class CgroupName(tuple):
    """The components of a cgroup, independent of the cgroup driver."""

    def to_systemd(self) -> str:
        """Return the cgroup path under the systemd driver."""
        if not self or self == ("",):
            return "/"
        escaped = [part.replace("-", "_") for part in self]
        try:
            return expand_slice("-".join(escaped) + ".slice")
        except ValueError as exc:
            raise ValueError(f"error converting cgroup name {list(self)} to systemd format: {exc}") from exc

    def to_cgroupfs(self) -> str:
        """Return the cgroup path under the cgroupfs driver."""
        return "/" + _join(*self)


def new_cgroup_name(base: CgroupName | tuple[str, ...], *args: str) -> CgroupName:
    """Return ``base`` extended by the given components."""
    for component in args:
        if "/" in component or "_" in component:
            raise ValueError(f"invalid character in component [{component!r}] of CgroupName")
    return CgroupName((*base, *args))


def generate_pod_cgroup_name(qos: PodQOSClass | str, pod_uid: str) -> CgroupName:
    """Return the cgroup name kubelet gives a pod of this QoS class."""
    qos = PodQOSClass(qos)
    base = CgroupName(("kubepods",))
    if qos is PodQOSClass.GUARANTEED:
        return new_cgroup_name(base, "pod" + pod_uid)
    qos_class = "burstable" if qos is PodQOSClass.BURSTABLE else "besteffort"
    return new_cgroup_name(base, qos_class, "pod" + pod_uid)


def is_cgroup2_unified_mode(root: str | Path = ROOT_CGROUP) -> bool:
    """Return True if ``root`` is a cgroup v2 unified hierarchy."""
    return Path(root, "cgroup.controllers").is_file()


def cgroup_driver_type(root: str | Path = ROOT_CGROUP) -> CgroupDriver:
    """Guess the kubelet cgroup driver from the layout under ``root``."""
    if dir_exists(Path(root, "kubepods.slice")) or dir_exists(Path(root, "systemd", "kubepods.slice")):
        return CgroupDriver.SYSTEMD
    return CgroupDriver.CGROUPFS


def pod_blkio_cgroup_path(
    blkio: PodBlkIO,
    root: str = ROOT_CGROUP,
    driver: CgroupDriver | str | None = None,
    unified: bool | None = None,
) -> str:
    """Return the directory of the pod's block I/O cgroup.

    ``driver`` and ``unified`` are detected from ``root`` when not given.
    """
    driver = cgroup_driver_type(root) if driver is None else CgroupDriver(driver)
    if unified is None:
        unified = is_cgroup2_unified_mode(root)
    name = generate_pod_cgroup_name(blkio.pod_qos, blkio.pod_uid)
    cgroup_path = name.to_systemd() if driver is CgroupDriver.SYSTEMD else name.to_cgroupfs()
    if unified:
        return _join(str(root), cgroup_path)
    return _join(str(root), "blkio", cgroup_path)


def cg1_io_limit_paths(blk_path: str) -> dict[str, str]:
    """Return the cgroup v1 throttle file for each throttle type."""
    return {throttle: _join(blk_path, throttle) for throttle in supported_io_throttles()}


def cg2_io_limit_str(device_no: str, limit: IOLimit) -> str:
    """Return the io.max line for one device."""
    values = {"rbps": limit.rbps, "riops": limit.riops, "wbps": limit.wbps, "wiops": limit.wiops}
    settings = " ".join(f"{key}={value if value else 'max'}" for key, value in values.items())
    return f"{device_no} {settings}"


def _missing_path(pod_uid: str, path: str) -> FileNotFoundError:
    return FileNotFoundError(f"the pod(uid {pod_uid})'s cgroup blkio path({path}) is not exist")


def _write(path: str, line: str) -> None:
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as handle:
            handle.write(line)
    except OSError as exc:
        raise OSError(f"failed to write ioStr({line}) to path({path})") from exc


def set_io_limit(
    blkio: PodBlkIO,
    root: str = ROOT_CGROUP,
    driver: CgroupDriver | str | None = None,
    unified: bool | None = None,
) -> None:
    """Write the pod's device limits into its cgroup."""
    if unified is None:
        unified = is_cgroup2_unified_mode(root)
    blk_path = pod_blkio_cgroup_path(blkio, root, driver, unified)
    if not dir_exists(blk_path):
        raise _missing_path(blkio.pod_uid, blk_path)

    if unified:
        io_max_path = _join(blk_path, CGROUPV2_BLKIO_THROTTLE)
        if not file_exists(io_max_path):
            raise _missing_path(blkio.pod_uid, io_max_path)
        for device_no, limit in blkio.device_io_set.items():
            _write(io_max_path, cg2_io_limit_str(device_no, limit))
        return

    limit_paths = cg1_io_limit_paths(blk_path)
    missing = next((path for path in limit_paths.values() if not file_exists(path)), None)
    if missing is not None:
        raise _missing_path(blkio.pod_uid, missing)
    for device_no, limit in blkio.device_io_set.items():
        values = (limit.rbps, limit.riops, limit.wbps, limit.wiops)
        for throttle, value in zip(supported_io_throttles(), values):
            _write(limit_paths[throttle], f"{device_no} {value}")