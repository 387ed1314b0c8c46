from __future__ import annotations

import contextlib
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

from ..errors import LiveOSBuildError, MissingArtifactError
from .block import Partition, list_partitions, loop_device, mounted
from .command import run_cmd

logger = logging.getLogger(__name__)

KiB = 1024
MiB = 1024 * KiB

SECTOR_SIZE = 512
SECTORS_PER_MIB = MiB // SECTOR_SIZE

# Total size of a set of files is multiplied by this factor to get a disk
# size that is sure to hold them (block size waste, filesystem metadata).
EXPANSION_SAFETY_FACTOR = 1.5

LINUX_FILESYSTEMS = {"ext2", "ext3", "ext4", "xfs", "btrfs"}


@dataclass(frozen=True)
class DiskLayout:
    """GPT layout for a writeable image: ESP followed by a root partition."""

    size_mib: int
    esp_start_mib: int = 1
    esp_end_mib: int = 9
    esp_mountpoint: str = "/boot/efi"
    esp_options: str = "umask=0077"
    root_fs: str = "ext4"

    def __post_init__(self) -> None:
        if self.size_mib <= self.esp_end_mib:
            raise LiveOSBuildError(f"disk size ({self.size_mib} MiB) leaves no room for the root partition")

    @classmethod
    def for_root_size(cls, root_mib: int) -> "DiskLayout":
        """Layout with `root_mib` MiB left for the root partition after the ESP."""

        return cls(size_mib=cls.esp_end_mib + root_mib)


@dataclass(frozen=True)
class FstabEntry:
    spec: str
    mountpoint: str
    fstype: str
    options: str = "defaults"
    dump: int = 0
    passno: int = 0


def render_fstab(entries: List[FstabEntry]) -> str:
    lines = [f"{e.spec} {e.mountpoint} {e.fstype} {e.options} {e.dump} {e.passno}" for e in entries]
    return "\n".join(lines) + "\n"


def parse_fstab(text: str) -> List[FstabEntry]:
    entries: List[FstabEntry] = []
    for raw in text.splitlines():
        line = raw.split("#", 1)[0].strip()
        if not line:
            continue
        fields = line.split()
        if len(fields) < 3:
            continue
        entries.append(
            FstabEntry(
                spec=fields[0],
                mountpoint=fields[1],
                fstype=fields[2],
                options=fields[3] if len(fields) > 3 else "defaults",
                dump=int(fields[4]) if len(fields) > 4 and fields[4].isdigit() else 0,
                passno=int(fields[5]) if len(fields) > 5 and fields[5].isdigit() else 0,
            )
        )
    return entries


def get_size_on_disk_bytes(root_dir: str | Path) -> int:
    """Return the disk usage of a tree, as reported by `du -s` (KiB units)."""

    r = run_cmd(["du", "-s", str(root_dir)])
    m = re.match(r"^(\d+)\s+", r.stdout or "")
    if not m:
        raise LiveOSBuildError(f"failed to parse 'du -s' output ({r.stdout!r})")
    return int(m.group(1)) * KiB


def estimate_disk_size_mib(root_dir: str | Path, safety_factor: float = EXPANSION_SAFETY_FACTOR) -> int:
    size_mib = get_size_on_disk_bytes(root_dir) // MiB + 1
    return int(size_mib * safety_factor)


def get_uuid(dev: str) -> str:
    """Return filesystem UUID for a block device."""

    r = run_cmd(["blkid", "-s", "UUID", "-o", "value", dev])
    uuid = (r.stdout or "").strip()
    if not uuid:
        raise LiveOSBuildError(f"Unable to determine UUID for {dev}")
    return uuid


def convert_to_raw(image_file: str | Path, build_dir: str | Path) -> Path:
    """Return a raw image path for `image_file`, converting qcow2/vhd(x) with qemu-img."""

    src = Path(image_file)
    if src.suffix.lower() not in {".qcow2", ".vhd", ".vhdx"}:
        return src

    raw = Path(build_dir) / f"{src.stem}.raw"
    raw.parent.mkdir(parents=True, exist_ok=True)
    run_cmd(["qemu-img", "convert", "-O", "raw", str(src), str(raw)])
    return raw


def _resolve_fstab_spec(spec: str, parts: List[Partition], ids: Dict[str, Dict[str, str]]) -> Optional[Partition]:
    key, _, value = spec.partition("=")
    for p in parts:
        pid = ids.get(p.path) or {}
        if spec == p.path:
            return p
        if value and pid.get(key.upper()) == value:
            return p
    return None


def _partition_ids(dev: str) -> Dict[str, str]:
    r = run_cmd(["blkid", "-o", "export", dev], check=False)
    ids: Dict[str, str] = {}
    for line in (r.stdout or "").splitlines():
        k, sep, v = line.partition("=")
        if sep:
            ids[k.strip()] = v.strip()
    return ids


@contextlib.contextmanager
def connect_to_existing_image(image_file: str | Path, mount_dir: str | Path) -> Iterator[Path]:
    """Mount a full disk image read-only, the way its own fstab lays it out.

    The root partition is the Linux partition holding /etc/fstab; every other
    fstab entry that maps to a partition of the same image (ESP included) is
    mounted below it. Everything is unmounted and detached on exit.
    """

    with contextlib.ExitStack() as stack:
        dev = stack.enter_context(loop_device(image_file, partscan=True, read_only=True))
        parts = list_partitions(dev)
        if not parts:
            raise MissingArtifactError(f"no partitions found in image ({image_file})")

        root_dir: Optional[Path] = None
        for p in parts:
            if p.is_esp or (p.fstype or "") not in LINUX_FILESYSTEMS:
                continue
            candidate = contextlib.ExitStack()
            mnt = candidate.enter_context(mounted(p.path, mount_dir, fstype=p.fstype, options="ro", make_dir=True))
            if (mnt / "etc/fstab").is_file():
                stack.enter_context(candidate)
                root_dir = mnt
                root_part = p
                break
            candidate.close()

        if root_dir is None:
            raise MissingArtifactError(f"failed to find a rootfs partition (with /etc/fstab) in image ({image_file})")

        ids = {p.path: _partition_ids(p.path) for p in parts}
        entries = parse_fstab((root_dir / "etc/fstab").read_text(encoding="utf-8"))
        nested = [e for e in entries if e.mountpoint.startswith("/") and e.mountpoint != "/"]
        for e in sorted(nested, key=lambda e: e.mountpoint.count("/")):
            p = _resolve_fstab_spec(e.spec, parts, ids)
            if p is None or p == root_part:
                logger.debug("Skipping fstab entry %s (%s): not a partition of this image", e.mountpoint, e.spec)
                continue
            stack.enter_context(
                mounted(p.path, root_dir / e.mountpoint.lstrip("/"), fstype=p.fstype or e.fstype, options="ro")
            )

        yield root_dir


def create_new_image(
    image_file: str | Path,
    layout: DiskLayout,
    mount_dir: str | Path,
    install: Callable[[Path], None],
) -> Path:
    """Create a GPT disk image (ESP + root), mount it and let `install` populate it.

    Layout:
    - ESP: FAT32 mounted at /boot/efi
    - Root: ext4 mounted at /
    """

    image = Path(image_file)
    image.parent.mkdir(parents=True, exist_ok=True)
    if image.exists():
        image.unlink()

    logger.info("Creating disk image %s (%d MiB)", image, layout.size_mib)
    run_cmd(["truncate", "-s", f"{layout.size_mib}M", str(image)])

    esp_start = layout.esp_start_mib * SECTORS_PER_MIB
    esp_end = layout.esp_end_mib * SECTORS_PER_MIB - 1
    run_cmd(
        [
            "sgdisk",
            "--clear",
            f"--new=1:{esp_start}:{esp_end}",
            "--typecode=1:ef00",
            "--change-name=1:esp",
            f"--new=2:{esp_end + 1}:0",
            "--typecode=2:8300",
            "--change-name=2:rootfs",
            str(image),
        ]
    )

    with loop_device(image, partscan=True) as dev:
        parts = list_partitions(dev)
        if len(parts) != 2:
            raise LiveOSBuildError(f"expected 2 partitions on {dev}, found {len(parts)}")
        esp_part, root_part = parts[0].path, parts[1].path

        run_cmd(["mkfs.vfat", "-F", "32", esp_part])
        run_cmd([f"mkfs.{layout.root_fs}", "-F", root_part])

        with mounted(root_part, mount_dir, fstype=layout.root_fs, make_dir=True) as root:
            esp_dir = root / layout.esp_mountpoint.lstrip("/")
            with mounted(esp_part, esp_dir, fstype="vfat", options=layout.esp_options, make_dir=True):
                install(root)

                fstab = render_fstab(
                    [
                        FstabEntry(spec=f"UUID={get_uuid(root_part)}", mountpoint="/", fstype=layout.root_fs, passno=1),
                        FstabEntry(
                            spec=f"UUID={get_uuid(esp_part)}",
                            mountpoint=layout.esp_mountpoint,
                            fstype="vfat",
                            options=layout.esp_options,
                            passno=2,
                        ),
                    ]
                )
                fstab_path = root / "etc/fstab"
                fstab_path.parent.mkdir(parents=True, exist_ok=True)
                fstab_path.write_text(fstab, encoding="utf-8")

    return image
