"""Layout of a LiveOS ISO media and the names of the files it is built from."""

from __future__ import annotations

from dataclasses import dataclass

VOLUME_LABEL = "CDROM"

BOOTX64_BINARY = "bootx64.efi"
GRUBX64_BINARY = "grubx64.efi"
GRUBX64_NOPREFIX_BINARY = "grubx64-noprefix.efi"

GRUB_CFG_DIR = "/boot/grub2"
ISO_GRUB_CFG = "grub.cfg"
PXE_GRUB_CFG = "grub-pxe.cfg"

INITRD_IMAGE = "initrd.img"
VMLINUZ_PREFIX = "vmlinuz-"
ISO_KERNEL_PATH = "/boot/vmlinuz"
ISO_INITRD_PATH = "/boot/" + INITRD_IMAGE
ISO_BOOTLOADERS_DIR = "/efi/boot"
# Where a prefix-less grub looks for its configuration on the media.
NOPREFIX_GRUB_CFG_PATH = "/EFI/BOOT/" + ISO_GRUB_CFG

LIVE_OS_DIR = "liveos"
LIVE_OS_IMAGE = "rootfs.img"


@dataclass(frozen=True)
class ImageNameInfo:
    """Output ISO name: {base_name}{release_version}{tag}.iso"""

    base_name: str
    release_version: str = ""
    tag: str = ""

    @property
    def name(self) -> str:
        return f"{self.base_name}{self.release_version}{self.tag}.iso"


def image_name_from_base_name(base_name: str) -> ImageNameInfo:
    return ImageNameInfo(base_name=base_name)
