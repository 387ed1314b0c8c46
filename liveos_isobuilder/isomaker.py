"""ISO writer.

`XorrisoIsoMaker` turns (initrd, grub.cfg, extra files) into a UEFI-bootable
LiveOS ISO. The bootloaders and the kernel are not passed in: they travel
inside the initrd (see rootfs.stage_isomaker_initrd_artifacts) and are
unpacked from it here.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, Sequence

from .errors import ConfigConflictError, MissingArtifactError
from .lib.assets import copy_file
from .lib.block import remove_dir
from .lib.command import run_cmd
from .lib.storage import MiB
from .media import (
    BOOTX64_BINARY,
    GRUB_CFG_DIR,
    GRUBX64_BINARY,
    ISO_BOOTLOADERS_DIR,
    ISO_GRUB_CFG,
    ISO_INITRD_PATH,
    ISO_KERNEL_PATH,
    VOLUME_LABEL,
    ImageNameInfo,
)

logger = logging.getLogger(__name__)

EFIBOOT_IMAGE = "efiboot.img"
EFIBOOT_MEDIA_PATH = GRUB_CFG_DIR.lstrip("/") + "/" + EFIBOOT_IMAGE
# FAT overhead on top of the bootloader binaries.
EFIBOOT_SLACK_MIB = 4

# Where the staged artifacts land once the initrd is unpacked.
UNPACKED_KERNEL = "boot/vmlinuz"
UNPACKED_BOOTLOADERS_DIR = "boot/efi/EFI/BOOT"


@dataclass(frozen=True)
class FileToCopy:
    """One file of the ISO media: copied from `source`, or written from `content`."""

    destination: str
    source: Optional[Path] = None
    content: Optional[str] = None
    permissions: Optional[int] = None
    no_dereference: bool = False


class IsoWriter(Protocol):
    def make(
        self,
        *,
        initrd_path: Path,
        grub_cfg_path: Path,
        files: Sequence[FileToCopy],
        output_dir: Path,
        image_name: ImageNameInfo,
    ) -> Path: ...


def place_file(item: FileToCopy, media_root: Path) -> Path:
    target = media_root / item.destination.lstrip("/")
    target.parent.mkdir(parents=True, exist_ok=True)
    if item.content is not None:
        target.write_text(item.content, encoding="utf-8")
    elif item.source is not None:
        copy_file(item.source, target, no_dereference=item.no_dereference)
    else:
        raise ConfigConflictError(f"file for {item.destination} has neither a source nor a content")
    if item.permissions is not None:
        os.chmod(target, item.permissions)
    return target


@dataclass
class XorrisoIsoMaker:
    build_dir: Path
    volume_label: str = VOLUME_LABEL
    enable_bios_boot: bool = False
    enable_rpm_repo: bool = False

    def __post_init__(self) -> None:
        self.build_dir = Path(self.build_dir)
        if self.enable_bios_boot:
            raise ConfigConflictError("BIOS boot is not supported for LiveOS ISO images")
        if self.enable_rpm_repo:
            raise ConfigConflictError("an RPM repository is not supported on LiveOS ISO images")

    def _unpack_initrd(self, initrd_path: Path) -> Path:
        unpack_dir = self.build_dir / "initrd"
        unpack_dir.mkdir(parents=True)
        run_cmd(["lsinitrd", "--unpack", str(initrd_path)], cwd=str(unpack_dir))

        for rel in (
            UNPACKED_KERNEL,
            f"{UNPACKED_BOOTLOADERS_DIR}/{BOOTX64_BINARY}",
            f"{UNPACKED_BOOTLOADERS_DIR}/{GRUBX64_BINARY}",
        ):
            if not (unpack_dir / rel).exists():
                raise MissingArtifactError(f"initrd ({initrd_path}) does not contain /{rel}")
        return unpack_dir

    def _make_efiboot(self, image: Path, bootloaders: Sequence[Path], grub_cfg_path: Path) -> None:
        size_mib = sum(p.stat().st_size for p in bootloaders) // MiB + EFIBOOT_SLACK_MIB
        image.parent.mkdir(parents=True, exist_ok=True)
        run_cmd(["truncate", "-s", f"{size_mib}M", str(image)])
        run_cmd(["mkfs.vfat", str(image)])
        run_cmd(["mmd", "-i", str(image), "::/EFI", "::/EFI/BOOT"])
        for p in (*bootloaders, grub_cfg_path):
            run_cmd(["mcopy", "-i", str(image), str(p), f"::/EFI/BOOT/{p.name}"])

    def make(
        self,
        *,
        initrd_path: Path,
        grub_cfg_path: Path,
        files: Sequence[FileToCopy],
        output_dir: Path,
        image_name: ImageNameInfo,
    ) -> Path:
        logger.info("Creating ISO image %s", image_name.name)

        # This directory is ours alone.
        remove_dir(self.build_dir)
        self.build_dir.mkdir(parents=True)

        unpacked = self._unpack_initrd(Path(initrd_path))
        media = self.build_dir / "media"
        bootloaders = [unpacked / UNPACKED_BOOTLOADERS_DIR / n for n in (BOOTX64_BINARY, GRUBX64_BINARY)]

        layout = [
            FileToCopy(destination=ISO_KERNEL_PATH, source=unpacked / UNPACKED_KERNEL),
            FileToCopy(destination=ISO_INITRD_PATH, source=Path(initrd_path)),
            FileToCopy(destination=f"{GRUB_CFG_DIR}/{ISO_GRUB_CFG}", source=Path(grub_cfg_path)),
        ]
        layout += [FileToCopy(destination=f"{ISO_BOOTLOADERS_DIR}/{p.name}", source=p) for p in bootloaders]
        for item in [*layout, *files]:
            place_file(item, media)

        self._make_efiboot(media / EFIBOOT_MEDIA_PATH, bootloaders, Path(grub_cfg_path))

        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        iso = output_dir / image_name.name
        run_cmd(
            [
                "xorriso",
                "-as",
                "mkisofs",
                "-V",
                self.volume_label,
                "-e",
                EFIBOOT_MEDIA_PATH,
                "-no-emul-boot",
                "-R",
                "-J",
                "-joliet-long",
                "-o",
                str(iso),
                str(media),
            ]
        )
        return iso
