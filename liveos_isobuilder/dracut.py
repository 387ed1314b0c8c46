from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .lib.pkg import rpm_package_info

logger = logging.getLogger(__name__)

DRACUT_PACKAGE = "dracut"

# First dracut build shipping the livenet ISO downloader used for PXE boot.
PXE_MIN_DRACUT_VERSION = 102
PXE_MIN_DRACUT_RELEASE = 7


@dataclass(frozen=True)
class DracutPackageInfo:
    version: str
    release: str

    def to_dict(self) -> Dict[str, str]:
        return {"packageVersion": self.version, "packageRelease": self.release}

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> Optional["DracutPackageInfo"]:
        if not raw:
            return None
        return cls(version=str(raw.get("packageVersion") or ""), release=str(raw.get("packageRelease") or ""))


def _leading_int(value: str) -> Optional[int]:
    m = re.match(r"^\s*(\d+)", value or "")
    return int(m.group(1)) if m else None


def get_dracut_package_info(rootfs_dir: str | Path) -> DracutPackageInfo:
    info = rpm_package_info(rootfs_dir, DRACUT_PACKAGE)
    logger.debug("Found dracut %s-%s", info.version, info.release)
    return DracutPackageInfo(version=info.version, release=info.release)


def pxe_support_gap(info: Optional[DracutPackageInfo]) -> Optional[str]:
    """Return why PXE artifacts cannot be produced with this dracut, or None if they can."""

    if info is None:
        return "dracut package information is not available"

    version = _leading_int(info.version)
    release = _leading_int(info.release)
    if version is None or release is None:
        return f"cannot parse dracut package version ({info.version}-{info.release})"

    if version > PXE_MIN_DRACUT_VERSION:
        return None
    if version == PXE_MIN_DRACUT_VERSION and release >= PXE_MIN_DRACUT_RELEASE:
        return None

    return (
        f"dracut {info.version}-{info.release} is older than the minimum required for PXE support "
        f"({PXE_MIN_DRACUT_VERSION}-{PXE_MIN_DRACUT_RELEASE})"
    )
