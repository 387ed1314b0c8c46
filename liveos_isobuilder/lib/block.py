from __future__ import annotations

import contextlib
import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional

from ..errors import CleanupError, LiveOSBuildError, releasing
from .command import run_cmd

logger = logging.getLogger(__name__)

ESP_PARTTYPE_GUID = "c12a7328-f81f-11d2-ba4b-00a0c93ec93b"


@dataclass(frozen=True)
class Partition:
    path: str
    fstype: Optional[str]
    parttype: Optional[str]

    @property
    def is_esp(self) -> bool:
        return (self.parttype or "").lower() == ESP_PARTTYPE_GUID


@contextlib.contextmanager
def loop_device(image_path: str | Path, *, partscan: bool = False, read_only: bool = False) -> Iterator[str]:
    """Attach an image file to a free loop device; detached on exit."""

    argv = ["losetup", "--find", "--show"]
    if partscan:
        argv.append("--partscan")
    if read_only:
        argv.append("--read-only")
    argv.append(str(image_path))

    dev = run_cmd(argv).stdout.strip()
    if not dev:
        raise LiveOSBuildError(f"losetup did not report a loop device for {image_path}")
    logger.debug("Attached %s to %s", image_path, dev)

    with releasing(lambda: _detach(dev), f"loop device {dev}"):
        yield dev


def _detach(dev: str) -> None:
    run_cmd(["losetup", "--detach", dev])
    logger.debug("Detached %s", dev)


@contextlib.contextmanager
def mounted(
    source: str,
    mountpoint: str | Path,
    *,
    fstype: Optional[str] = None,
    options: Optional[str] = None,
    make_dir: bool = False,
) -> Iterator[Path]:
    """Mount `source` on `mountpoint`; unmounted on exit."""

    mp = Path(mountpoint)
    if make_dir:
        mp.mkdir(parents=True, exist_ok=True)

    argv = ["mount"]
    if fstype:
        argv += ["-t", fstype]
    if options:
        argv += ["-o", options]
    argv += [source, str(mp)]
    run_cmd(argv)

    with releasing(lambda: run_cmd(["umount", str(mp)]), f"mount {mp}"):
        yield mp


def _mount_points_under(path: Path) -> List[str]:
    found: List[str] = []
    for dirpath, dirnames, _ in os.walk(path):
        for name in list(dirnames):
            sub = os.path.join(dirpath, name)
            if os.path.ismount(sub):
                found.append(sub)
                dirnames.remove(name)
    return found


def _remove_dir(path: Path) -> None:
    # Never recurse into a filesystem that is still attached.
    if os.path.ismount(path):
        raise CleanupError(f"refusing to remove {path}: still a mount point")
    busy = _mount_points_under(path)
    if busy:
        raise CleanupError(f"refusing to remove {path}: still mounted below it: {', '.join(busy)}")
    shutil.rmtree(path)


@contextlib.contextmanager
def scratch_dir(parent: str | Path, prefix: str) -> Iterator[Path]:
    """Create a uniquely named directory under `parent`; removed on exit."""

    Path(parent).mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix=prefix, dir=str(parent)))
    with releasing(lambda: _remove_dir(path), f"directory {path}"):
        yield path


def remove_dir(path: str | Path) -> None:
    p = Path(path)
    if p.exists():
        _remove_dir(p)


def list_partitions(device: str) -> List[Partition]:
    """Return the partitions of a (partition-scanned) block device."""

    run_cmd(["udevadm", "settle"], check=False)
    r = run_cmd(["lsblk", "--json", "--output", "PATH,TYPE,FSTYPE,PARTTYPE", device])
    data = json.loads(r.stdout or "{}")

    parts: List[Partition] = []
    pending = list(data.get("blockdevices") or [])
    while pending:
        node = pending.pop(0)
        if node.get("type") == "part":
            parts.append(Partition(path=node["path"], fstype=node.get("fstype"), parttype=node.get("parttype")))
        pending.extend(node.get("children") or [])
    return parts
