# kubedevices

Building blocks for Kubernetes device plugins on Linux hosts. The package has four modules:

- **`kubedevices.topology`** finds the sysfs device behind a device node or file. It collects NUMA, CPU and socket hints for it and works out the NUMA nodes a set of devices is attached to.
- **`kubedevices.containers`** parses resource quantities (`"1"`, `"100m"`, `"2Ki"`, `"1e3"`) and checks a container's extended-resource requests and limits.
- **`kubedevices.idxd`** discovers Intel DSA/IAA work queues in sysfs and turns them into a tree of allocatable devices.
- **`kubedevices.sgx_webhook`** mutates pods that request SGX EPC memory. It adds the enclave and provision resources, the aesmd socket volume, mounts and environment, and the EPC annotation, and returns the change as a JSON patch.

The package has no runtime dependencies and needs Python 3.10 or newer.

## Installation

```
pip install kubedevices
```

## Usage

### Topology hints

```python
from kubedevices.topology import find_sysfs_device, new_topology_hints, get_topology_info

sysfs_path = find_sysfs_device("/dev/dri/card0")
for hint in new_topology_hints(sysfs_path).values():
    print(hint)          # <hints CPUs:0-7, NUMAs:0 (from /sys/devices/...)>

info = get_topology_info(["/dev/dri/card0"])
info.nodes               # sorted NUMA node ids, e.g. [0]
```

Each function takes an optional `root` that is prefixed to sysfs paths, so a fake sysfs tree can stand in for the real one. `merge_topology_hints(org, hints)` adds the hints missing from `org` to it.

Failures raise `TopologyError`. One case does not raise: a path that does not exist gives an empty string from `find_sysfs_device`.

### Container resources

```python
from kubedevices.containers import Container, parse_quantity, get_requested_resources

container = Container(
    name="app",
    limits={"device.intel.com/type": parse_quantity("1")},
    requests={"device.intel.com/type": parse_quantity("1")},
)
get_requested_resources(container, "device.intel.com")
# {'device.intel.com/type': 1}
```

`ResourceError` is raised for a malformed quantity, when the limit and request of a resource in the namespace differ, and when such a quantity is not an integer. `format_binary_si(2048)` gives `"2Ki"`.

### DSA work queue discovery

```python
from kubedevices.idxd import DevicePlugin, get_dev_nodes

plugin = DevicePlugin(
    "/sys/bus/dsa/devices",
    "/sys/bus/dsa/devices/dsa*/wq*/state",
    "/dev/dsa",
    10,
    get_dev_nodes,
    "/dev/char",
)
tree = plugin.scan_once()   # {"wq-user-dedicated": {"wq-user-dedicated-wq0.0-0": DeviceInfo(...)}, ...}
```

Only enabled queues are reported. A shared queue yields `shared_dev_num` devices and any other queue yields one. User queues carry their device node and its `/dev/char/<major>:<minor>` symlink. `scan(notifier)` calls `notifier(tree)` with a fresh tree every five seconds until `stop()` is called. Unreadable sysfs entries or bad device nodes raise `IdxdError`.

### SGX pod mutation

```python
from kubedevices.sgx_webhook import handle, mutate_pod

response = handle(raw_pod_json)
response.allowed, response.code, response.patch, response.warnings
```

`handle` takes a pod as raw JSON. A pod that cannot be decoded gives code 400, and invalid resource requests give code 500. `mutate_pod(pod)` works on a decoded pod dictionary and returns the mutated copy and the warnings. `json_patch(original, modified)` computes the RFC 6902 operations that take one document to the other.

## What the package does not do

The package has no device plugin server and does not register with the kubelet. Nothing serves the SGX mutation over HTTPS as an admission webhook, and no command line tool is included. These functions are meant to be called from such a program.

## Running the tests

```
pip install -e ".[test]"
pytest
```