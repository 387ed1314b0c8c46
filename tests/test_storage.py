from pathlib import Path

import pytest

from conftest import ESP_PARTTYPE, LINUX_PARTTYPE, lsblk_json, write_files
from liveos_isobuilder.errors import LiveOSBuildError, MissingArtifactError
from liveos_isobuilder.lib.storage import (
    DiskLayout,
    connect_to_existing_image,
    convert_to_raw,
    create_new_image,
    estimate_disk_size_mib,
    parse_fstab,
)

TWO_PARTS = [("/dev/loop0p1", "vfat", ESP_PARTTYPE), ("/dev/loop0p2", "ext4", LINUX_PARTTYPE)]


def test_disk_size_estimate(fake_run):
    # 1 GiB in KiB units
    fake_run.on(["du"], lambda cmd: "1048576\t/x\n")
    assert estimate_disk_size_mib("/x") == 1537


def test_parse_fstab_skips_comments():
    entries = parse_fstab(
        "# static file system information\n"
        "UUID=abcd / ext4 defaults 0 1\n"
        "\n"
        "UUID=EF01 /boot/efi vfat umask=0077 0 2  # esp\n"
    )
    assert [(e.spec, e.mountpoint, e.fstype, e.passno) for e in entries] == [
        ("UUID=abcd", "/", "ext4", 1),
        ("UUID=EF01", "/boot/efi", "vfat", 2),
    ]
    assert entries[1].options == "umask=0077"


def test_layout_needs_room_for_root():
    with pytest.raises(LiveOSBuildError):
        DiskLayout(size_mib=9)


def test_small_content_still_gets_a_root_partition(fake_run):
    fake_run.on(["du"], lambda cmd: "100\t/x\n")
    size_mib = estimate_disk_size_mib("/x")
    assert size_mib == 1
    layout = DiskLayout.for_root_size(size_mib)
    assert layout.size_mib == 10
    assert layout.size_mib > layout.esp_end_mib


class TestConvertToRaw:
    def test_raw_used_as_is(self, fake_run, tmp_path):
        assert convert_to_raw(tmp_path / "disk.raw", tmp_path / "build") == tmp_path / "disk.raw"
        assert fake_run.calls == []

    def test_qcow2_converted(self, fake_run, tmp_path):
        raw = convert_to_raw(tmp_path / "disk.qcow2", tmp_path / "build")
        assert raw == tmp_path / "build/disk.raw"
        assert fake_run.calls == [["qemu-img", "convert", "-O", "raw", str(tmp_path / "disk.qcow2"), str(raw)]]


class TestConnectToExistingImage:
    def test_mounts_the_image_as_its_fstab_says(self, fake_run, tmp_path):
        mount_dir = tmp_path / "mnt"
        fake_run.on(["lsblk"], lambda cmd: lsblk_json("/dev/loop0", TWO_PARTS))
        fake_run.on(["blkid"], lambda cmd: "UUID=EF01\n" if cmd[-1] == "/dev/loop0p1" else "UUID=abcd\n")

        def mount(cmd):
            if cmd[-1] == str(mount_dir):
                write_files(mount_dir, {"etc/fstab": "UUID=abcd / ext4 defaults 0 1\nUUID=EF01 /boot/efi vfat umask=0077 0 2\n"})

        fake_run.on(["mount"], mount)

        with connect_to_existing_image(tmp_path / "disk.raw", mount_dir) as root:
            assert root == mount_dir
            assert fake_run.mounts() == [str(mount_dir), str(mount_dir / "boot/efi")]

        mounts = [c for c in fake_run.calls if c[0] == "mount"]
        assert mounts[0] == ["mount", "-t", "ext4", "-o", "ro", "/dev/loop0p2", str(mount_dir)]
        assert mounts[1] == ["mount", "-t", "vfat", "-o", "ro", "/dev/loop0p1", str(mount_dir / "boot/efi")]
        assert ["losetup", "--find", "--show", "--partscan", "--read-only", str(tmp_path / "disk.raw")] in fake_run.calls
        fake_run.assert_balanced()

    def test_no_rootfs_partition(self, fake_run, tmp_path):
        fake_run.on(["lsblk"], lambda cmd: lsblk_json("/dev/loop0", TWO_PARTS))

        with pytest.raises(MissingArtifactError, match="rootfs partition"):
            with connect_to_existing_image(tmp_path / "disk.raw", tmp_path / "mnt"):
                pass
        fake_run.assert_balanced()


def test_create_new_image(fake_run, tmp_path):
    fake_run.on(["lsblk"], lambda cmd: lsblk_json("/dev/loop0", TWO_PARTS))
    fake_run.on(["blkid"], lambda cmd: "uuid-" + cmd[-1][-1] + "\n")
    installed = []
    mount_dir = tmp_path / "mnt"

    def install(root: Path):
        installed.append(root)
        write_files(root, {"usr/bin/true": ""})

    image = create_new_image(tmp_path / "out/disk.raw", DiskLayout(size_mib=100), mount_dir, install)

    assert image == tmp_path / "out/disk.raw"
    assert installed == [mount_dir]
    sgdisk = next(c for c in fake_run.calls if c[0] == "sgdisk")
    assert "--new=1:2048:18431" in sgdisk
    assert "--new=2:18432:0" in sgdisk
    assert ["truncate", "-s", "100M", str(image)] in fake_run.calls
    assert ["mkfs.vfat", "-F", "32", "/dev/loop0p1"] in fake_run.calls
    assert ["mkfs.ext4", "-F", "/dev/loop0p2"] in fake_run.calls

    fstab = (mount_dir / "etc/fstab").read_text()
    assert "UUID=uuid-2 / ext4 defaults 0 1" in fstab
    assert "UUID=uuid-1 /boot/efi vfat umask=0077 0 2" in fstab

    assert fake_run.umounts() == [str(mount_dir / "boot/efi"), str(mount_dir)]
    fake_run.assert_balanced()
