"""Scheduler configuration: disk selectors and the volume scheduling strategy."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from carina import log

CONFIG_PATH = "/etc/carina/"
CONFIG_NAME = "config.json"
SCHEDULER_BINPACK = "binpack"
SCHEDULER_SPREADOUT = "spreadout"

_LEGACY_GROUPS = ("ssd", "hdd")


class ConfigError(Exception):
    """The configuration could not be read or decoded."""


def _lower_keys(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(key).lower(): _lower_keys(item) for key, item in value.items()}
    return value


def _get(mapping: Mapping[str, Any], key: str) -> Any:
    wanted = key.lower()
    for name, value in mapping.items():
        if str(name).lower() == wanted:
            return value
    return None


def _as_str(value: Any, key: str) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return str(value)
    raise ConfigError(f"'{key}' expected a string, got {type(value).__name__}")


def _as_str_list(value: Any, key: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return value.split(",") if value else []
    if isinstance(value, list):
        return [_as_str(item, key) for item in value]
    raise ConfigError(f"'{key}' expected a list, got {type(value).__name__}")


def _as_int(value: Any, key: str) -> int:
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value, 10)
        except ValueError:
            raise ConfigError(f"cannot parse '{key}' as int: {value!r}") from None
    raise ConfigError(f"'{key}' expected an int, got {type(value).__name__}")


@dataclass
class DiskSelectorItem:
    """One disk group: which devices belong to it and how they are used."""

    name: str = ""
    re: list[str] = field(default_factory=list)
    policy: str = ""
    node_label: str = ""

    @classmethod
    def from_mapping(cls, data: Any) -> DiskSelectorItem:
        if not isinstance(data, Mapping):
            raise ConfigError(f"disk selector must be an object, got {type(data).__name__}")
        return cls(
            name=_as_str(_get(data, "name"), "name"),
            re=_as_str_list(_get(data, "re"), "re"),
            policy=_as_str(_get(data, "policy"), "policy"),
            node_label=_as_str(_get(data, "nodeLabel"), "nodeLabel"),
        )


def _decode_selectors(settings: Mapping[str, Any]) -> list[DiskSelectorItem]:
    raw = settings.get("diskselector")
    if raw is None:
        raw = settings.get("diskselectors")
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError("diskSelector must be a list")
    return [DiskSelectorItem.from_mapping(item) for item in raw]


@dataclass
class SchedulerConfig:
    """Decoded scheduler configuration.

    When loaded from a file, changes to that file are picked up on the next
    query; a change that cannot be decoded is logged and the old values kept.
    """

    disk_selectors: list[DiskSelectorItem] = field(default_factory=list)
    disk_scan_interval: int = 0
    settings: dict[str, Any] = field(default_factory=dict)
    path: Path | None = None
    _mtime: float | None = field(default=None, init=False, repr=False, compare=False)

    def reload(self) -> None:
        """Read the configuration file again."""
        if self.path is None:
            raise ConfigError("configuration was not loaded from a file")
        fresh = load_config(self.path)
        self.disk_selectors = fresh.disk_selectors
        self.disk_scan_interval = fresh.disk_scan_interval
        self.settings = fresh.settings
        self._mtime = fresh._mtime

    def _refresh(self) -> None:
        if self.path is None:
            return
        try:
            mtime = self.path.stat().st_mtime
        except OSError:
            return
        if mtime == self._mtime:
            return
        try:
            self.reload()
        except ConfigError as exc:
            log.error("Failed to unmarshal the configuration: %s", exc)
            self._mtime = mtime

    def scheduler_strategy(self) -> str:
        """Return "binpack" or "spreadout"; anything else means binpack."""
        self._refresh()
        strategy = self.settings.get("schedulerstrategy")
        strategy = "" if strategy is None else str(strategy).lower()
        if strategy in (SCHEDULER_BINPACK, SCHEDULER_SPREADOUT):
            return strategy
        return SCHEDULER_BINPACK

    def get_device_group(self, disk_type: str) -> str:
        """Return the volume group a storage class disk type refers to.

        A configured non-raw group of that exact name is returned as is; the
        legacy names "ssd" and "hdd" map to "carina-vg-ssd" and "carina-vg-hdd".
        """
        self._refresh()
        for selector in self.disk_selectors:
            if selector.policy.lower() == "raw":
                continue
            if selector.name == disk_type:
                return disk_type
        group = disk_type.lower()
        if group in _LEGACY_GROUPS:
            group = f"carina-vg-{group}"
        return group

    def check_raw_device_group(self, disk_type: str) -> bool:
        """Return True if ``disk_type`` names a disk group with the raw policy."""
        self._refresh()
        group = disk_type.lower()
        if group in _LEGACY_GROUPS:
            group = f"carina-vg-{group}"
        return any(
            selector.name == group and selector.policy.lower() == "raw"
            for selector in self.disk_selectors
        )


def parse_config(data: str | bytes | Mapping[str, Any], path: str | Path | None = None) -> SchedulerConfig:
    """Decode a configuration from JSON text or an already parsed mapping."""
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except ValueError as exc:
            raise ConfigError(f"Failed to get the configuration: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError("configuration must be a JSON object")
    settings = _lower_keys(data)
    return SchedulerConfig(
        disk_selectors=_decode_selectors(settings),
        disk_scan_interval=_as_int(settings.get("diskscaninterval"), "diskScanInterval"),
        settings=settings,
        path=None if path is None else Path(path),
    )


def load_config(path: str | Path = CONFIG_PATH) -> SchedulerConfig:
    """Load the configuration from a file, or from config.json inside a directory."""
    file_path = Path(path)
    if file_path.is_dir():
        file_path = file_path / CONFIG_NAME
    try:
        mtime = file_path.stat().st_mtime
        text = file_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Failed to get the configuration: {exc}") from exc
    config = parse_config(text, file_path)
    config._mtime = mtime
    return config