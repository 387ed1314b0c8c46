import os

import pytest

from conftest import write_files
from liveos_isobuilder.errors import CleanupError
from liveos_isobuilder.lib import block


def _mounted_at(monkeypatch, *paths):
    mounts = {os.path.normpath(str(p)) for p in paths}
    monkeypatch.setattr(block.os.path, "ismount", lambda p: os.path.normpath(str(p)) in mounts)


def test_remove_dir(tmp_path):
    write_files(tmp_path / "tmp", {"writeable-rootfs/etc/os-release": "ID=azurelinux\n"})
    block.remove_dir(tmp_path / "tmp")
    assert not (tmp_path / "tmp").exists()


def test_remove_dir_missing_is_noop(tmp_path):
    block.remove_dir(tmp_path / "never-created")


def test_remove_dir_refuses_mount_point(monkeypatch, tmp_path):
    write_files(tmp_path / "tmp", {"file": "x"})
    _mounted_at(monkeypatch, tmp_path / "tmp")

    with pytest.raises(CleanupError, match="still a mount point"):
        block.remove_dir(tmp_path / "tmp")
    assert (tmp_path / "tmp/file").exists()


def test_remove_dir_refuses_nested_bind_mount(monkeypatch, tmp_path):
    root = tmp_path / "tmp"
    write_files(root, {"writeable-rootfs/dev/null": "", "writeable-rootfs/etc/fstab": ""})
    _mounted_at(monkeypatch, root / "writeable-rootfs/dev")

    with pytest.raises(CleanupError) as exc:
        block.remove_dir(root)

    assert str(root / "writeable-rootfs/dev") in str(exc.value)
    assert (root / "writeable-rootfs/dev/null").exists()
    assert (root / "writeable-rootfs/etc/fstab").exists()


def test_scratch_dir_kept_while_something_is_mounted_inside(monkeypatch, tmp_path):
    with pytest.raises(CleanupError):
        with block.scratch_dir(tmp_path, "tmp-squashfs-mount-") as d:
            write_files(d, {"proc/cpuinfo": "cpu"})
            _mounted_at(monkeypatch, d / "proc")

    (leftover,) = list(tmp_path.iterdir())
    assert (leftover / "proc/cpuinfo").exists()
