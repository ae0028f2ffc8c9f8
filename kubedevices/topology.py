"""Discovery of CPU, NUMA and socket locality hints for devices from sysfs."""

from __future__ import annotations

import glob
import os
import re
import stat
from dataclasses import dataclass, field
from typing import Iterable

PROVIDER_KUBELET = "kubelet"

_VIRTUAL_DEVICES = "/sys/devices/virtual"
_NUMA_ID = re.compile(r"[+-]?[0-9]+")
_INT64_MAX = 2**63 - 1


class TopologyError(Exception):
    """Raised when topology information cannot be gathered."""


@dataclass
class Hint:
    """Locality hints detected in sysfs for one device."""

    provider: str
    cpus: str = ""
    numas: str = ""
    sockets: str = ""

    def __str__(self) -> str:
        cpus = nodes = sockets = sep = ""
        if self.cpus:
            cpus = "CPUs:" + self.cpus
            sep = ", "
        if self.numas:
            nodes = sep + "NUMAs:" + self.numas
            sep = ", "
        if self.sockets:
            sockets = sep + "sockets:" + self.sockets
        return f"<hints {cpus}{nodes}{sockets} (from {self.provider})>"


@dataclass
class TopologyInfo:
    """NUMA nodes a set of devices is attached to, in ascending order."""

    nodes: list[int] = field(default_factory=list)


def read_files_in_directory(names: Iterable[str], directory: str) -> dict[str, str]:
    """Read the named files in a directory, stripped; missing files are skipped."""
    contents: dict[str, str] = {}
    for name in names:
        try:
            with open(os.path.join(directory, name), encoding="utf-8") as fh:
                contents[name] = fh.read().strip()
        except FileNotFoundError:
            continue
        except OSError as err:
            raise TopologyError(f"{directory}: unable to read file {name!r}: {err}") from err
    return contents


def get_devices_from_virtual(real_dev_path: str, root: str = "") -> list[str]:
    """Return the physical devices behind a virtual device (VFIO groups only)."""
    if not os.path.isabs(real_dev_path):
        raise TopologyError(f"unable to find relative path: {real_dev_path} is not absolute")
    rel_path = os.path.relpath(real_dev_path, _VIRTUAL_DEVICES)
    if rel_path.startswith(".."):
        raise TopologyError(f"{real_dev_path} is not a virtual device")

    directory, sep, name = rel_path.rpartition("/")
    if not (sep and directory == "vfio"):
        return []

    iommu_group = f"{root}/sys/kernel/iommu_groups/{name}/devices"
    try:
        entries = sorted(os.listdir(iommu_group))
    except OSError as err:
        raise TopologyError(f"failed to read IOMMU group {iommu_group}: {err}") from err

    devices = []
    for entry in entries:
        try:
            devices.append(os.path.realpath(os.path.join(iommu_group, entry), strict=True))
        except OSError as err:
            raise TopologyError(f"failed to get real path for {entry}: {err}") from err
    return devices


def _get_topology_hint(sysfs_path: str, root: str) -> Hint:
    values = read_files_in_directory(("local_cpulist", "numa_node"), sysfs_path)
    hint = Hint(
        provider=sysfs_path,
        cpus=values.get("local_cpulist", ""),
        numas=values.get("numa_node", ""),
    )
    # Non-NUMA aware device or system.
    if hint.numas == "-1":
        hint.numas = ""
    if hint.numas and not hint.cpus:
        # Broken hint: the BIOS may report a socket id as the NUMA node.
        try:
            parent_hints = new_topology_hints(os.path.dirname(sysfs_path), root)
        except TopologyError:
            parent_hints = {}
        cpus = ",".join(dict.fromkeys(h.cpus for h in parent_hints.values() if h.cpus))
        numas = ",".join(dict.fromkeys(h.numas for h in parent_hints.values() if h.numas))
        if cpus:
            hint.cpus = cpus
        if numas:
            hint.numas = numas
        if not hint.cpus and hint.numas:
            hint.sockets = hint.numas
            hint.numas = ""
    return hint


def new_topology_hints(dev_path: str, root: str = "") -> dict[str, Hint]:
    """Collect hints for a device and the devices it depends on (e.g. RAID members)."""
    try:
        real_dev_path = os.path.realpath(dev_path, strict=True)
    except OSError as err:
        raise TopologyError(f"failed get realpath for {dev_path}: {err}") from err

    hints: dict[str, Hint] = {}
    prefix = root + "/sys/devices/"
    path = real_dev_path
    while path.startswith(prefix):
        hint = _get_topology_hint(path, root)
        if hint.cpus or hint.numas or hint.sockets:
            hints[hint.provider] = hint
            break
        path = os.path.dirname(path)

    try:
        from_virtual = get_devices_from_virtual(real_dev_path, root)
    except TopologyError:
        from_virtual = []
    deps = sorted(glob.glob(os.path.join(glob.escape(real_dev_path), "slaves", "*")))

    for device in deps + from_virtual:
        hints = merge_topology_hints(hints, new_topology_hints(device, root))
    return hints


def merge_topology_hints(
    org: dict[str, Hint] | None, hints: dict[str, Hint] | None
) -> dict[str, Hint]:
    """Add the hints not yet present in ``org`` to it and return it."""
    result = org if org is not None else {}
    for key, value in (hints or {}).items():
        result.setdefault(key, value)
    return result


def find_sysfs_device(dev: str, root: str = "") -> str:
    """Return the sysfs path of the physical device behind a path.

    Device nodes map to the device itself, other files to the device holding
    them.  A missing path yields an empty string.
    """
    try:
        st = os.stat(dev)
    except FileNotFoundError:
        return ""
    except OSError as err:
        raise TopologyError(f"unable to get stat for {dev}: {err}") from err

    dev_type = "block"
    rdev = st.st_dev
    if stat.S_ISCHR(st.st_mode) or stat.S_ISBLK(st.st_mode):
        rdev = st.st_rdev
        if stat.S_ISCHR(st.st_mode):
            dev_type = "char"

    major, minor = os.major(rdev), os.minor(rdev)
    if major == 0:
        raise TopologyError(f"{dev} is a virtual device node")

    dev_path = f"/sys/dev/{dev_type}/{major}:{minor}"
    try:
        real_dev_path = os.path.realpath(dev_path, strict=True)
    except OSError as err:
        raise TopologyError(f"failed get realpath for {dev_path}: {err}") from err
    return root + real_dev_path


def _parse_numa_id(text: str) -> int:
    text = text.strip()
    if not _NUMA_ID.fullmatch(text) or abs(int(text)) > _INT64_MAX:
        raise TopologyError(f"unable to convert numa node {text} into int64")
    node_id = int(text)
    if node_id < 0:
        raise TopologyError(f"numa node is negative: {node_id}")
    return node_id


def get_topology_info(devs: Iterable[str], root: str = "") -> TopologyInfo:
    """Return the NUMA nodes the given device nodes are attached to."""
    node_ids: set[int] = set()
    for dev in devs:
        sysfs_device = find_sysfs_device(dev, root)
        if not sysfs_device:
            raise TopologyError(f"device {dev} doesn't exist")
        for hint in new_topology_hints(sysfs_device, root).values():
            if hint.numas:
                node_ids.update(_parse_numa_id(node) for node in hint.numas.split(","))
    return TopologyInfo(nodes=sorted(node_ids))