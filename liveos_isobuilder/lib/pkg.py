from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from ..errors import MissingArtifactError
from .chroot import chroot_cmd

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PackageInfo:
    name: str
    version: str
    release: str


def rpm_is_installed(target_root: str | Path, package: str) -> bool:
    """Return True if `package` is installed in the target root's rpm database."""

    r = chroot_cmd(target_root, ["rpm", "-q", package], check=False)
    return r.returncode == 0


def rpm_package_info(target_root: str | Path, package: str) -> PackageInfo:
    r = chroot_cmd(
        target_root,
        ["rpm", "-q", "--queryformat", "%{VERSION} %{RELEASE}\n", package],
        check=False,
    )
    fields = (r.stdout or "").split()
    if r.returncode != 0 or len(fields) < 2:
        raise MissingArtifactError(f"package ({package}) is not installed in {target_root}")
    return PackageInfo(name=package, version=fields[0], release=fields[1])
