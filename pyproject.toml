[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "carina"
version = "0.1.0"
description = "Node-local storage scheduling helpers: disk-group configuration, capacity-aware node filtering and scoring, cgroup block I/O limits and command execution."
requires-python = ">=3.10"
dependencies = []
keywords = ["kubernetes", "csi", "local-storage", "scheduler", "lvm", "cgroup", "blkio"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Filesystems",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["carina"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
