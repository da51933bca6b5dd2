# carina

Building blocks for scheduling and managing node-local storage volumes. The package is a library with no runtime dependencies outside the standard library.

## Modules

- **`carina.configuration`**: the scheduler configuration. `load_config(path)` reads a JSON file, or `config.json` inside a directory. The default location is `/etc/carina/`. `parse_config(data)` accepts JSON text or a mapping. Both return a `SchedulerConfig`, which holds the `disk_selectors` (a list of `DiskSelectorItem`), the `disk_scan_interval` and the raw `settings`. It offers these queries:
  - `scheduler_strategy()` returns `"binpack"` or `"spreadout"`. Any other value counts as binpack.
  - `get_device_group(disk_type)` resolves a storage-class disk group. The legacy names `ssd` and `hdd` become `carina-vg-ssd` and `carina-vg-hdd`.
  - `check_raw_device_group(disk_type)` tells whether a disk group uses the raw policy.

  A configuration loaded from a file reloads itself when the file changes. If the new contents cannot be decoded, the error is logged and the old values are kept. `reload()` forces a reload. Decoding problems raise `ConfigError`.
- **`carina.localstorage`**: the `LocalStorage` plugin, which has these methods:
  - `filter(pod, node_name)` rejects a node whose disk groups cannot hold the pod's pending claims. A claim that is already bound pins the pod to its volume's node.
  - `score(pod, node_name)` ranks nodes from 0 to `MAX_SCORE` (10) according to the configured strategy.

  Both return a `Status` that carries a `Code`.

  The module also has these functions:
  - `minimum_value_minus` does best-fit placement on raw disks.
  - `parse_quantity` turns quantity strings such as `3Gi` or `500M` into integers.
  - `get_node_storage_resource` and `get_lv_exclusivity_disks` read from a cache lister first and fall back to a client.
- **`carina.example`**: `ExamplePlugin` is a template plugin that shows each scheduling step. It covers queue ordering, `pre_filter`, `filter` (by memory), `post_filter`, `score` (by pod count), `normalize_score` (which rescales to 0–100) and `permit` (which holds pods younger than six minutes). It works on `NodeInfo`, `NodeScore` and `QueuedPodInfo`.
- **`carina.iolimit`**: works out a pod's block I/O cgroup path under the cgroupfs or systemd driver, on cgroup v1 or v2. It takes the path from `pod_blkio_cgroup_path` and uses `CgroupName`, `new_cgroup_name`, `expand_slice`, `cgroup_driver_type` and `is_cgroup2_unified_mode`. `set_io_limit` writes read/write bps and iops limits (`IOLimit`, `PodBlkIO`) to the blkio throttle files or to `io.max`.
- **`carina.executor`**: `CommandExecutor` runs external commands. It can log their output, return stdout only, return stdout and stderr combined, or return the contents of an output file the command writes. It also handles timeouts, first by interrupting and then by killing the process, and it can start a resident background process. Failures raise `CommandError`, which carries `output` and `returncode`.
- **`carina.mutx`**: `GlobalLocks` is a set of non-blocking per-identifier locks. It has `try_acquire` and `release`, and `hold(lock_id)` works as a context manager.
- **`carina.log`**: a process-wide logger that writes to stdout and to a file rotated at 30 MB with 3 backups. The default file is `/var/log/carina/carina.log`. `setup()` configures the logger. `get_logger()` returns it, and falls back to console-only output if the file cannot be opened. The level is debug when the `DEBUG` environment variable is set. The functions `debug`, `info`, `warn` and `error` log at their level. `panic` logs and raises `RuntimeError`. `fatal` logs and exits.
- **`carina.utils`**: helpers for string lists and maps, for checking files and directories, and for retrying a call (`until_max_retry`). `fill` copies a dataclass into another object.
- **`carina.constants`**: storage-class parameter keys and names shared by the modules.

## Installation

```
pip install .
```

## Examples

Serialising operations per volume:

```python
from carina.mutx import GlobalLocks

locks = GlobalLocks()
with locks.hold("volume-1"):
    ...  # raises RuntimeError if "volume-1" is already held
```

Resolving disk groups from a configuration:

```python
from carina.configuration import parse_config

config = parse_config({
    "diskSelector": [{"name": "carina-raw-ssd", "re": ["sdb"], "policy": "RAW", "nodeLabel": ""}],
    "diskScanInterval": 300,
    "schedulerStrategy": "spreadout",
})
config.scheduler_strategy()                      # "spreadout"
config.get_device_group("ssd")                   # "carina-vg-ssd"
config.check_raw_device_group("carina-raw-ssd")  # True
```

Best-fit allocation on raw disks. Capacities are given in GiB and requests in bytes:

```python
from carina.localstorage import PvcRequest, minimum_value_minus

capacities = [3, 4, 5, 2, 5, 23, 1]
minimum_value_minus(capacities, PvcRequest(exclusive=False, request=3 * 1024**3))
# returns 2; capacities is now [1, 2, 0, 4, 5, 5, 23]
```

Formatting a cgroup v2 `io.max` line:

```python
from carina.iolimit import IOLimit, cg2_io_limit_str

cg2_io_limit_str("8:0", IOLimit(rbps=1048576))
# "8:0 rbps=1048576 riops=max wbps=max wiops=max"
```

## What the package does not do

- It does not talk to a cluster. `LocalStorage` expects the caller to supply the listers (objects with `get` and `list`) and a client (objects with `get(resource, name)` and `list(resource)`). Pods, claims, storage classes, volumes and node storage resources are plain mappings, and claims are looked up by `"namespace/name"`.
- It provides no scheduler process and no command-line entry point. The plugins are classes that a host program calls.

## Running the tests

```
pip install .[test]
pytest
```