"""Artifact table of a LiveOS ISO build and the classifiers that fill it.

Two trees are scanned:
- the /boot directory of a full disk image's (writeable copy of the) rootfs,
- the root of an extracted LiveOS ISO.

Each file is either Recognized (it fills one named slot and is handed to its
consumer through a dedicated parameter) or Opaque (carried onto the new ISO
media verbatim, at the same relative path).
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

from .dracut import DracutPackageInfo
from .errors import MissingArtifactError
from .lib.assets import copy_file, enumerate_files
from .media import (
    BOOTX64_BINARY,
    GRUB_CFG_DIR,
    GRUBX64_BINARY,
    GRUBX64_NOPREFIX_BINARY,
    INITRD_IMAGE,
    ISO_GRUB_CFG,
    LIVE_OS_IMAGE,
    NOPREFIX_GRUB_CFG_PATH,
    PXE_GRUB_CFG,
    VMLINUZ_PREFIX,
)
from .saved_configs import SAVED_CONFIGS_DIR, SAVED_CONFIGS_FILE_NAME

logger = logging.getLogger(__name__)

# Regenerated for every build; never copied out of a full image's /boot.
BOOT_DIR_EXCLUSIONS = (
    re.compile(r"/boot/initrd\.img.*"),
    re.compile(r"/boot/initramfs-.*\.img.*"),
    # The ESP's grub.cfg only redirects to the rootfs one.
    re.compile(r"/boot/efi/boot/grub2/grub\.cfg"),
)

# Written by the ISO writer itself; dropped when re-reading an ISO.
ISO_WRITER_FILES = ("efiboot.img",)

KERNEL_FILE_NAME = "vmlinuz"


@dataclass(frozen=True)
class IsoWorkingDirs:
    """Scratch layout of one build.

    build_dir/
      artifacts/      extracted and generated artifacts
      isomaker-tmp/   owned by the ISO writer, which wipes it
    """

    build_dir: Path
    artifacts_dir: Path
    isomaker_build_dir: Path

    @classmethod
    def from_build_dir(cls, build_dir: str | Path) -> "IsoWorkingDirs":
        iso_build_dir = Path(build_dir) / "tmp"
        return cls(
            build_dir=iso_build_dir,
            artifacts_dir=iso_build_dir / "artifacts",
            isomaker_build_dir=iso_build_dir / "isomaker-tmp",
        )


@dataclass
class IsoArtifacts:
    kernel_version: str = ""
    # None when no rootfs was expanded during this run.
    dracut_package_info: Optional[DracutPackageInfo] = None
    bootx64_efi_path: Optional[Path] = None
    grubx64_efi_path: Optional[Path] = None
    grub_noprefix: bool = False
    iso_grub_cfg_path: Optional[Path] = None
    pxe_grub_cfg_path: Optional[Path] = None
    saved_configs_path: Optional[Path] = None
    vmlinuz_path: Optional[Path] = None
    initrd_image_path: Optional[Path] = None
    squashfs_image_path: Optional[Path] = None
    # local build path -> path on the ISO media
    additional_files: Dict[Path, str] = field(default_factory=dict)

    def require_bootloaders(self) -> None:
        if self.bootx64_efi_path is None:
            raise MissingArtifactError(
                f"failed to find the boot efi file ({BOOTX64_BINARY}): this file is provided by the (shim) package"
            )
        if self.grubx64_efi_path is None:
            raise MissingArtifactError(
                f"failed to find the grub efi file ({GRUBX64_BINARY} or {GRUBX64_NOPREFIX_BINARY}): this file is "
                "provided by either the (grub2-efi-binary) or the (grub2-efi-binary-noprefix) package"
            )

    def set_grub_cfg(self, path: Path) -> None:
        self.iso_grub_cfg_path = path
        # The PXE variant always sits next to the ISO one.
        self.pxe_grub_cfg_path = path.parent / PXE_GRUB_CFG

    def media_destinations(self) -> List[str]:
        return list(self.additional_files.values())


class Slot(enum.Enum):
    BOOTX64 = "bootx64"
    GRUBX64 = "grubx64"
    GRUBX64_NOPREFIX = "grubx64-noprefix"
    GRUB_CFG = "grub-cfg"
    NOPREFIX_GRUB_CFG = "noprefix-grub-cfg"
    PXE_GRUB_CFG = "pxe-grub-cfg"
    KERNEL = "kernel"
    SQUASHFS = "squashfs"
    INITRD = "initrd"
    SAVED_CONFIGS = "saved-configs"
    ISO_WRITER_FILE = "iso-writer-file"


@dataclass(frozen=True)
class Recognized:
    slot: Slot


@dataclass(frozen=True)
class Opaque:
    relative_path: str


Classification = Union[Recognized, Opaque]


def _media_path(path: Path, root: Path) -> str:
    return "/" + path.relative_to(root).as_posix()


def classify_boot_file(path: Path, root: Path) -> Classification:
    """Classify one file of a full image's rootfs (`root` is the rootfs dir)."""

    name = path.name
    if name == BOOTX64_BINARY:
        return Recognized(Slot.BOOTX64)
    if name == GRUBX64_BINARY:
        return Recognized(Slot.GRUBX64)
    if name == GRUBX64_NOPREFIX_BINARY:
        return Recognized(Slot.GRUBX64_NOPREFIX)
    if name == ISO_GRUB_CFG:
        return Recognized(Slot.GRUB_CFG)
    if name.startswith(VMLINUZ_PREFIX):
        return Recognized(Slot.KERNEL)
    return Opaque(_media_path(path, root))


def classify_iso_file(path: Path, root: Path) -> Classification:
    """Classify one file of an extracted LiveOS ISO (`root` is the media root)."""

    name = path.name
    media_path = _media_path(path, root)
    if name == BOOTX64_BINARY:
        return Recognized(Slot.BOOTX64)
    if name == GRUBX64_BINARY:
        return Recognized(Slot.GRUBX64)
    if name == ISO_GRUB_CFG:
        if media_path.lower() == NOPREFIX_GRUB_CFG_PATH.lower():
            return Recognized(Slot.NOPREFIX_GRUB_CFG)
        return Recognized(Slot.GRUB_CFG)
    if name == PXE_GRUB_CFG:
        return Recognized(Slot.PXE_GRUB_CFG)
    if name == LIVE_OS_IMAGE:
        return Recognized(Slot.SQUASHFS)
    if name == INITRD_IMAGE:
        return Recognized(Slot.INITRD)
    if name == SAVED_CONFIGS_FILE_NAME:
        return Recognized(Slot.SAVED_CONFIGS)
    if name == KERNEL_FILE_NAME or name.startswith(VMLINUZ_PREFIX):
        return Recognized(Slot.KERNEL)
    if name in ISO_WRITER_FILES and media_path.startswith(GRUB_CFG_DIR + "/"):
        return Recognized(Slot.ISO_WRITER_FILE)
    return Opaque(media_path)


def _is_excluded(path: Path) -> bool:
    text = path.as_posix()
    return any(rx.search(text) for rx in BOOT_DIR_EXCLUSIONS)


def classify_boot_dir_files(rootfs_dir: str | Path, artifacts_dir: str | Path) -> IsoArtifacts:
    """Copy a rootfs' /boot into the artifacts dir and fill the artifact table from it.

    The kernel is renamed to `vmlinuz`. With a prefix-less grub, grub.cfg is
    placed where that grub looks for it on the media.
    """

    root = Path(rootfs_dir)
    out_root = Path(artifacts_dir)
    files = enumerate_files(root / "boot")
    noprefix = any(f.name == GRUBX64_NOPREFIX_BINARY for f in files)

    artifacts = IsoArtifacts(grub_noprefix=noprefix)
    for source in files:
        in_root = Path("/") / source.relative_to(root)
        if _is_excluded(in_root):
            logger.debug("Not copying %s: unnecessary or regenerated", source)
            continue

        target = out_root / source.relative_to(root)
        decision = classify_boot_file(source, root)

        if isinstance(decision, Opaque):
            copy_file(source, target, no_dereference=True)
            artifacts.additional_files[target] = decision.relative_path
            logger.debug("Carrying %s as %s", source, decision.relative_path)
            continue

        slot = decision.slot
        if slot is Slot.BOOTX64:
            artifacts.bootx64_efi_path = target
        elif slot in (Slot.GRUBX64, Slot.GRUBX64_NOPREFIX):
            artifacts.grubx64_efi_path = target
        elif slot is Slot.GRUB_CFG:
            if noprefix:
                target = out_root / NOPREFIX_GRUB_CFG_PATH.lstrip("/")
            artifacts.set_grub_cfg(target)
        elif slot is Slot.KERNEL:
            target = target.parent / KERNEL_FILE_NAME
            artifacts.vmlinuz_path = target
        copy_file(source, target, no_dereference=True)
        logger.debug("Recognized %s as %s", source, slot.value)

    artifacts.require_bootloaders()
    return artifacts


def classify_iso_files(iso_root: str | Path) -> IsoArtifacts:
    """Fill an artifact table from an extracted LiveOS ISO. Files are used in place."""

    root = Path(iso_root)
    artifacts = IsoArtifacts()
    for path in enumerate_files(root):
        decision = classify_iso_file(path, root)
        if isinstance(decision, Opaque):
            artifacts.additional_files[path] = decision.relative_path
            continue

        slot = decision.slot
        if slot is Slot.BOOTX64:
            artifacts.bootx64_efi_path = path
        elif slot is Slot.GRUBX64:
            artifacts.grubx64_efi_path = path
        elif slot is Slot.GRUB_CFG:
            artifacts.set_grub_cfg(path)
        elif slot is Slot.NOPREFIX_GRUB_CFG:
            # Regenerated from the main grub.cfg.
            artifacts.grub_noprefix = True
        elif slot is Slot.KERNEL:
            artifacts.vmlinuz_path = path
        elif slot is Slot.SQUASHFS:
            artifacts.squashfs_image_path = path
        elif slot is Slot.INITRD:
            artifacts.initrd_image_path = path
        elif slot is Slot.SAVED_CONFIGS:
            artifacts.saved_configs_path = path
        logger.debug("Recognized %s as %s", path, slot.value)

    if artifacts.saved_configs_path is None:
        artifacts.saved_configs_path = root / SAVED_CONFIGS_DIR / SAVED_CONFIGS_FILE_NAME
    return artifacts
