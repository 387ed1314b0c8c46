from __future__ import annotations

import logging
from pathlib import Path

from .errors import MissingArtifactError
from .lib.assets import copy_file
from .lib.chroot import chroot_binds, chroot_cmd
from .lib.command import run_cmd
from .lib.pkg import rpm_is_installed
from .media import INITRD_IMAGE, LIVE_OS_IMAGE

logger = logging.getLogger(__name__)

# dmsquash-live and livenet need these in the initrd.
REQUIRED_INITRD_PACKAGES = ("squashfs-tools", "tar", "device-mapper", "curl")

INITRD_PATH_IN_CHROOT = "/initrd.img"


def create_squashfs_image(rootfs_dir: str | Path, artifacts_dir: str | Path) -> Path:
    logger.debug("Creating squashfs of %s", rootfs_dir)

    image = Path(artifacts_dir) / LIVE_OS_IMAGE
    image.parent.mkdir(parents=True, exist_ok=True)
    if image.exists():
        image.unlink()

    run_cmd(["mksquashfs", str(rootfs_dir), str(image)])
    return image


def generate_initrd_image(
    rootfs_dir: str | Path,
    artifacts_dir: str | Path,
    *,
    kernel_version: str,
    include_source: str,
    include_target: str,
) -> Path:
    """Run dracut inside the rootfs and copy the resulting initrd into the artifacts dir.

    `include_source` (a path inside the rootfs) is embedded in the initrd at `include_target`.
    """

    logger.debug("Generating initrd")
    root = Path(rootfs_dir)
    target = Path(artifacts_dir) / INITRD_IMAGE

    with chroot_binds(root):
        for pkg in REQUIRED_INITRD_PACKAGES:
            logger.debug("Checking if (%s) is installed", pkg)
            if not rpm_is_installed(root, pkg):
                raise MissingArtifactError(
                    f"package ({pkg}) is not installed: the following packages must be installed to generate "
                    f"an iso: {', '.join(REQUIRED_INITRD_PACKAGES)}"
                )

        chroot_cmd(
            root,
            [
                "dracut",
                INITRD_PATH_IN_CHROOT,
                "--kver",
                kernel_version,
                "--filesystems",
                "squashfs",
                "--include",
                include_source,
                include_target,
            ],
        )

        copy_file(root / INITRD_PATH_IN_CHROOT.lstrip("/"), target)

    return target
