"""Discovery of DSA/IAA work queues from sysfs for a device plugin."""

from __future__ import annotations

import glob
import logging
import os
import stat
import threading
from dataclasses import dataclass, field
from typing import Callable

CHAR_DEV_DIR = "/dev/char"
SCAN_FREQUENCY = 5.0
HEALTHY = "Healthy"

_log = logging.getLogger(__name__)


class IdxdError(Exception):
    """Raised when work queues or their device nodes cannot be inspected."""


@dataclass(frozen=True)
class DeviceSpec:
    """A device node to expose inside a container."""

    host_path: str
    container_path: str
    permissions: str = "rw"


@dataclass
class DeviceInfo:
    """A schedulable device: health state, nodes, mounts and environment."""

    state: str = HEALTHY
    nodes: list[DeviceSpec] = field(default_factory=list)
    mounts: list[str] = field(default_factory=list)
    envs: dict[str, str] = field(default_factory=dict)


DeviceTree = dict[str, dict[str, DeviceInfo]]
DevNodesFunc = Callable[[str, str, str], list[DeviceSpec]]


def _read_file(path: str) -> str:
    try:
        with open(path, encoding="utf-8") as fh:
            return fh.read().strip()
    except OSError as err:
        raise IdxdError(f"unable to read {path}: {err}") from err


def get_dev_nodes(dev_dir: str, char_dev_dir: str, wq_name: str) -> list[DeviceSpec]:
    """Return the work queue's device node and its /dev/char/<major>:<minor> symlink."""
    dev_path = os.path.normpath(os.path.join(dev_dir, wq_name))
    try:
        st = os.stat(dev_path)
    except OSError as err:
        raise IdxdError(f"unable to stat {dev_path}: {err}") from err
    if not stat.S_ISCHR(st.st_mode):
        raise IdxdError(f"{dev_path} is not a character device")

    char_dev_path = os.path.normpath(
        os.path.join(char_dev_dir, f"{os.major(st.st_rdev)}:{os.minor(st.st_rdev)}")
    )
    try:
        link_st = os.lstat(char_dev_path)
    except OSError as err:
        raise IdxdError(f"unable to stat {char_dev_path}: {err}") from err
    if not stat.S_ISLNK(link_st.st_mode):
        raise IdxdError(f"{char_dev_path} is not a symlink")

    try:
        dest_path = os.path.realpath(char_dev_path, strict=True)
    except OSError as err:
        raise IdxdError(f"unable to resolve {char_dev_path}: {err}") from err
    if dest_path != dev_path:
        raise IdxdError(
            f"{char_dev_path} points to {dest_path} instead of device node {dev_path}"
        )

    return [
        DeviceSpec(host_path=dev_path, container_path=dev_path),
        DeviceSpec(host_path=char_dev_path, container_path=char_dev_path),
    ]


_default_dev_nodes = get_dev_nodes


class DevicePlugin:
    """Periodically scans sysfs for enabled work queues and reports them."""

    def __init__(
        self,
        sysfs_dir: str,
        state_pattern: str,
        dev_dir: str,
        shared_dev_num: int,
        get_dev_nodes: DevNodesFunc | None = None,
        char_dev_dir: str = CHAR_DEV_DIR,
    ) -> None:
        self.sysfs_dir = sysfs_dir
        self.state_pattern = state_pattern
        self.dev_dir = dev_dir
        self.char_dev_dir = char_dev_dir
        self.shared_dev_num = shared_dev_num
        self.scan_frequency = SCAN_FREQUENCY
        self._get_dev_nodes = get_dev_nodes if get_dev_nodes is not None else _default_dev_nodes
        self._done = threading.Event()

    def scan_once(self) -> DeviceTree:
        """Scan sysfs and devfs once and return the discovered devices by type."""
        tree: DeviceTree = {}
        for state_path in sorted(glob.glob(self.state_pattern)):
            if _read_file(state_path) != "enabled":
                continue

            queue_dir = os.path.dirname(state_path)
            wq_mode = _read_file(os.path.join(queue_dir, "mode"))
            wq_type = _read_file(os.path.join(queue_dir, "type"))
            wq_name = os.path.basename(queue_dir)

            nodes: list[DeviceSpec] = []
            if wq_type == "user":
                nodes = self._get_dev_nodes(self.dev_dir, self.char_dev_dir, wq_name)

            amount = self.shared_dev_num if wq_mode == "shared" else 1
            _log.debug(
                "%s: amount: %d, type: %s, mode: %s, nodes: %s",
                wq_name, amount, wq_type, wq_mode, nodes,
            )
            device_type = f"wq-{wq_type}-{wq_mode}"
            for i in range(amount):
                device_id = f"{device_type}-{wq_name}-{i}"
                tree.setdefault(device_type, {})[device_id] = DeviceInfo(nodes=list(nodes))
        return tree

    def scan(self, notifier: Callable[[DeviceTree], None]) -> None:
        """Scan repeatedly, passing each result to ``notifier``, until stopped."""
        while True:
            notifier(self.scan_once())
            if self._done.wait(self.scan_frequency):
                self._done.clear()
                return

    def stop(self) -> None:
        """Make a running or the next ``scan`` return after its current pass."""
        self._done.set()