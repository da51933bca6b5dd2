"""Names and keys shared by the scheduler plugin and the storage driver."""

# Name of the CSI plugin.
CSI_PLUGIN_NAME = "carina.storage.io"
# Storage class parameter naming the disk group.
DEVICE_DISK_KEY = "carina.storage.io/disk-group-name"
# Persistent volume attribute naming the node the volume lives on.
VOLUME_DEVICE_NODE = "carina.storage.io/node"
# Prefix of the capacity keys published by the device plugin.
DEVICE_CAPACITY_KEY_PREFIX = "carina.storage.io/"

# bcache storage class parameters.
VOLUME_BACKEND_DISK_TYPE = "carina.storage.io/backend-disk-group-name"
VOLUME_CACHE_DISK_TYPE = "carina.storage.io/cache-disk-group-name"
# Cache capacity ratio, 1-100.
VOLUME_CACHE_DISK_RATIO = "carina.storage.io/cache-disk-ratio"

# Volume types.
LVM_VOLUME_TYPE = "lvm"
RAW_VOLUME_TYPE = "raw"

# "true" when a raw disk may only be used by a single pod.
EXCLUSIVITY_DISK = "carina.storage.io/exclusively-raw-disk"