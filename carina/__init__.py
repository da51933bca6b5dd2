"""Node-local storage scheduling plugins, disk-group configuration, cgroup I/O limits and supporting utilities."""

__version__ = "0.1.0"