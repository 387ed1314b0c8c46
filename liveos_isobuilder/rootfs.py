from __future__ import annotations

import logging
from pathlib import Path

from .artifacts import IsoArtifacts
from .errors import LiveOSBuildError, MissingArtifactError
from .lib.assets import copy_file, copy_partition_files
from .media import BOOTX64_BINARY, GRUBX64_BINARY

logger = logging.getLogger(__name__)

KERNEL_MODULES_DIR = "usr/lib/modules"

# Staged inside the rootfs, then embedded by dracut into the initrd at
# INITRD_ARTIFACTS_DIR, where the ISO writer picks the binaries up.
ISOMAKER_STAGING_DIR = "/boot-staging"
INITRD_ARTIFACTS_DIR = "/boot"
STAGED_BOOTLOADERS_SUBDIR = "efi/EFI/BOOT"
STAGED_KERNEL_NAME = "vmlinuz"

DRACUT_CONFIG_PATH = "etc/dracut.conf.d/20-live-cd.conf"
DRACUT_CONFIG = """add_dracutmodules+=" dmsquash-live livenet "
add_drivers+=" overlay "
hostonly="no"
"""


def populate_writeable_rootfs(source_dir: str | Path, writeable_rootfs_dir: str | Path) -> Path:
    """Copy a mounted rootfs (with its ESP mounted below it) into a local writeable folder."""

    logger.debug("Creating writeable rootfs at %s", writeable_rootfs_dir)
    dst = Path(writeable_rootfs_dir)
    try:
        copy_partition_files(source_dir, dst)
    except LiveOSBuildError as e:
        raise LiveOSBuildError(f"failed to copy rootfs contents to a writeable folder ({dst}):\n{e}") from e
    return dst


def find_kernel_version(rootfs_dir: str | Path) -> str:
    """Return the name of the single non-empty kernel modules directory."""

    modules = Path(rootfs_dir) / KERNEL_MODULES_DIR
    if not modules.is_dir():
        raise MissingArtifactError(f"did not find any kernels installed under (/{KERNEL_MODULES_DIR})")

    # Uninstalled kernels can leave empty directories behind.
    versions = sorted(p.name for p in modules.iterdir() if p.is_dir() and any(p.iterdir()))
    if not versions:
        raise MissingArtifactError(f"did not find any kernels installed under (/{KERNEL_MODULES_DIR})")
    if len(versions) > 1:
        raise LiveOSBuildError(
            f"unsupported scenario: found more than one kernel under (/{KERNEL_MODULES_DIR}): {', '.join(versions)}"
        )

    logger.debug("Found installed kernel version (%s)", versions[0])
    return versions[0]


def stage_isomaker_initrd_artifacts(
    rootfs_dir: str | Path,
    artifacts: IsoArtifacts,
    staging_dir: str = ISOMAKER_STAGING_DIR,
) -> Path:
    logger.debug("Staging isomaker artifacts into writeable image")

    artifacts.require_bootloaders()
    if artifacts.vmlinuz_path is None:
        raise MissingArtifactError("failed to find the kernel image (vmlinuz-*) under /boot")

    staged = Path(rootfs_dir) / staging_dir.lstrip("/")
    bootloaders = staged / STAGED_BOOTLOADERS_SUBDIR
    bootloaders.mkdir(parents=True, exist_ok=True)

    copy_file(artifacts.bootx64_efi_path, bootloaders / BOOTX64_BINARY)
    # A prefix-less grub is staged under the regular name.
    copy_file(artifacts.grubx64_efi_path, bootloaders / GRUBX64_BINARY)
    copy_file(artifacts.vmlinuz_path, staged / STAGED_KERNEL_NAME)
    return staged


def prepare_rootfs_for_dracut(rootfs_dir: str | Path) -> None:
    """Drop the static mount table and install the LiveOS dracut configuration.

    The same tree becomes both the initrd (through dracut) and the squashfs.
    """

    root = Path(rootfs_dir)
    fstab = root / "etc/fstab"
    if fstab.exists():
        logger.debug("Deleting fstab from %s", fstab)
        fstab.unlink()

    conf = root / DRACUT_CONFIG_PATH
    conf.parent.mkdir(parents=True, exist_ok=True)
    conf.write_text(DRACUT_CONFIG, encoding="utf-8")
