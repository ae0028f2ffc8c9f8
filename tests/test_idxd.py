import os

import pytest

from kubedevices.idxd import (
    HEALTHY,
    DevicePlugin,
    DeviceSpec,
    IdxdError,
    get_dev_nodes,
)

DSA_MAJOR = 375


def fake_dev_nodes(dev_dir, char_dev_dir, wq_name):
    dev_path = os.path.join(dev_dir, wq_name)
    dev_num, queue_num = (int(part) for part in wq_name[2:].split("."))
    char_dev_path = os.path.join(char_dev_dir, f"{DSA_MAJOR}:{dev_num * 10 + queue_num}")
    return [
        DeviceSpec(host_path=dev_path, container_path=dev_path),
        DeviceSpec(host_path=char_dev_path, container_path=char_dev_path),
    ]


FOUR_QUEUES = ["dsa0/wq0.0", "dsa0/wq0.1", "dsa0/wq0.2", "dsa0/wq0.3"]

CASES = [
    ("no sysfs mounted", [], {}, 0, {}, False),
    (
        "all queues are disabled",
        FOUR_QUEUES,
        {
            "dsa0/wq0.0/state": "",
            "dsa0/wq0.1/state": "",
            "dsa0/wq0.2/state": "",
            "dsa0/wq0.3/state": "",
        },
        0,
        {},
        False,
    ),
    (
        "invalid: mode entry doesn't exist",
        FOUR_QUEUES,
        {
            "dsa0/wq0.0/state": "enabled",
            "dsa0/wq0.1/state": "enabled",
            "dsa0/wq0.2/state": "",
            "dsa0/wq0.3/state": "",
        },
        0,
        None,
        True,
    ),
    (
        "invalid: type entry doesn't exist",
        FOUR_QUEUES,
        {
            "dsa0/wq0.0/state": "enabled",
            "dsa0/wq0.1/state": "enabled",
            "dsa0/wq0.2/state": "",
            "dsa0/wq0.3/state": "",
            "dsa0/wq0.0/mode": "dedicated",
            "dsa0/wq0.1/mode": "dedicated",
        },
        0,
        None,
        True,
    ),
    (
        "valid: two dedicated user queues",
        FOUR_QUEUES,
        {
            "dsa0/wq0.0/state": "enabled",
            "dsa0/wq0.1/state": "enabled",
            "dsa0/wq0.2/state": "",
            "dsa0/wq0.3/state": "",
            "dsa0/wq0.0/mode": "dedicated",
            "dsa0/wq0.1/mode": "dedicated",
            "dsa0/wq0.0/type": "user",
            "dsa0/wq0.1/type": "user",
        },
        0,
        {"wq-user-dedicated": 2},
        False,
    ),
    (
        "valid: two shared user queues x 10",
        FOUR_QUEUES,
        {
            "dsa0/wq0.0/state": "enabled",
            "dsa0/wq0.1/state": "enabled",
            "dsa0/wq0.2/state": "",
            "dsa0/wq0.3/state": "",
            "dsa0/wq0.0/mode": "shared",
            "dsa0/wq0.1/mode": "shared",
            "dsa0/wq0.0/type": "user",
            "dsa0/wq0.1/type": "user",
        },
        10,
        {"wq-user-shared": 20},
        False,
    ),
    (
        "valid: all types of queues",
        ["dsa0/wq0.0", "dsa0/wq0.1", "dsa1/wq1.0", "dsa1/wq1.1", "dsa1/wq1.2", "dsa1/wq1.3"],
        {
            "dsa0/wq0.0/state": "enabled",
            "dsa0/wq0.1/state": "enabled",
            "dsa0/wq0.0/mode": "shared",
            "dsa0/wq0.1/mode": "dedicated",
            "dsa0/wq0.0/type": "user",
            "dsa0/wq0.1/type": "kernel",
            "dsa1/wq1.0/state": "enabled",
            "dsa1/wq1.1/state": "enabled",
            "dsa1/wq1.2/state": "enabled",
            "dsa1/wq1.3/state": "enabled",
            "dsa1/wq1.0/mode": "shared",
            "dsa1/wq1.1/mode": "dedicated",
            "dsa1/wq1.2/mode": "shared",
            "dsa1/wq1.3/mode": "dedicated",
            "dsa1/wq1.0/type": "mdev",
            "dsa1/wq1.1/type": "mdev",
            "dsa1/wq1.2/type": "mdev",
            "dsa1/wq1.3/type": "user",
        },
        10,
        {
            "wq-user-shared": 10,
            "wq-kernel-dedicated": 1,
            "wq-mdev-shared": 20,
            "wq-user-dedicated": 1,
            "wq-mdev-dedicated": 1,
        },
        False,
    ),
]


def make_plugin(tmp_path, dirs, files, shared_dev_num):
    sysfs = tmp_path / "sys/bus/dsa/devices"
    for directory in dirs:
        (sysfs / directory).mkdir(parents=True, exist_ok=True)
    for name, body in files.items():
        (sysfs / name).write_text(body)
    pattern = os.path.join(str(sysfs), "dsa*/wq*/state")
    return DevicePlugin(str(sysfs), pattern, "", shared_dev_num, get_dev_nodes=fake_dev_nodes)


@pytest.mark.parametrize(
    "name,dirs,files,shared,expected,expect_error", CASES, ids=[c[0] for c in CASES]
)
def test_scan(tmp_path, name, dirs, files, shared, expected, expect_error):
    plugin = make_plugin(tmp_path, dirs, files, shared)
    trees = []

    def notifier(tree):
        trees.append(tree)
        plugin.stop()

    if expect_error:
        with pytest.raises(IdxdError):
            plugin.scan(notifier)
        assert trees == []
    else:
        plugin.scan(notifier)
        assert len(trees) == 1
        assert {key: len(devices) for key, devices in trees[0].items()} == expected


def test_scan_once_device_ids_and_nodes(tmp_path):
    plugin = make_plugin(tmp_path, *CASES[4][1:4])
    tree = plugin.scan_once()
    devices = tree["wq-user-dedicated"]
    assert sorted(devices) == ["wq-user-dedicated-wq0.0-0", "wq-user-dedicated-wq0.1-0"]
    info = devices["wq-user-dedicated-wq0.0-0"]
    assert info.state == HEALTHY
    assert [spec.host_path for spec in info.nodes] == ["wq0.0", f"/dev/char/{DSA_MAJOR}:0"]


def test_non_user_queues_have_no_nodes(tmp_path):
    plugin = make_plugin(tmp_path, *CASES[6][1:4])
    tree = plugin.scan_once()
    assert all(info.nodes == [] for info in tree["wq-mdev-shared"].values())
    assert all(info.nodes == [] for info in tree["wq-kernel-dedicated"].values())


def test_get_dev_nodes_missing_node(tmp_path):
    with pytest.raises(IdxdError):
        get_dev_nodes(str(tmp_path), str(tmp_path), "wq0.0")


def test_get_dev_nodes_not_char_device(tmp_path):
    (tmp_path / "wq0.0").write_text("")
    with pytest.raises(IdxdError, match="not a character device"):
        get_dev_nodes(str(tmp_path), str(tmp_path), "wq0.0")


def _null_link_name():
    st = os.stat("/dev/null")
    return f"{os.major(st.st_rdev)}:{os.minor(st.st_rdev)}"


def test_get_dev_nodes_valid_symlink(tmp_path):
    char_dir = tmp_path / "char"
    char_dir.mkdir()
    link = char_dir / _null_link_name()
    link.symlink_to(os.path.realpath("/dev/null"))
    dev_dir = os.path.dirname(os.path.realpath("/dev/null"))
    specs = get_dev_nodes(dev_dir, str(char_dir), "null")
    dev_path = os.path.realpath("/dev/null")
    assert specs == [
        DeviceSpec(host_path=dev_path, container_path=dev_path, permissions="rw"),
        DeviceSpec(host_path=str(link), container_path=str(link), permissions="rw"),
    ]


def test_get_dev_nodes_char_entry_not_symlink(tmp_path):
    char_dir = tmp_path / "char"
    char_dir.mkdir()
    (char_dir / _null_link_name()).write_text("")
    dev_dir = os.path.dirname(os.path.realpath("/dev/null"))
    with pytest.raises(IdxdError, match="is not a symlink"):
        get_dev_nodes(dev_dir, str(char_dir), "null")


def test_get_dev_nodes_symlink_points_elsewhere(tmp_path):
    char_dir = tmp_path / "char"
    char_dir.mkdir()
    other = tmp_path / "other"
    other.write_text("")
    (char_dir / _null_link_name()).symlink_to(other)
    dev_dir = os.path.dirname(os.path.realpath("/dev/null"))
    with pytest.raises(IdxdError, match="instead of device node"):
        get_dev_nodes(dev_dir, str(char_dir), "null")