from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from .dracut import DracutPackageInfo
from .errors import ConfigConflictError

logger = logging.getLogger(__name__)

# Location on the ISO media of the options saved for later ISO-to-ISO runs.
SAVED_CONFIGS_DIR = "azl-image-customizer"
SAVED_CONFIGS_FILE_NAME = "saved-configs.yaml"


@dataclass(frozen=True)
class SavedConfigs:
    extra_command_line: str = ""
    pxe_iso_image_base_url: str = ""
    pxe_iso_image_file_url: str = ""
    dracut_package_info: Optional[DracutPackageInfo] = None

    def validate(self) -> None:
        if self.pxe_iso_image_base_url and self.pxe_iso_image_file_url:
            raise ConfigConflictError("saved configs: pxe isoImageBaseUrl and isoImageFileUrl cannot both be set")

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "iso": {"kernelCommandLine": {"extraCommandLine": self.extra_command_line}},
            "pxe": {
                "isoImageBaseUrl": self.pxe_iso_image_base_url,
                "isoImageFileUrl": self.pxe_iso_image_file_url,
            },
            "os": {},
        }
        if self.dracut_package_info is not None:
            out["os"]["dracutPackageInfo"] = self.dracut_package_info.to_dict()
        return out

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "SavedConfigs":
        iso = raw.get("iso") or {}
        pxe = raw.get("pxe") or {}
        os_ = raw.get("os") or {}
        saved = cls(
            extra_command_line=str(((iso.get("kernelCommandLine") or {}).get("extraCommandLine")) or ""),
            pxe_iso_image_base_url=str(pxe.get("isoImageBaseUrl") or ""),
            pxe_iso_image_file_url=str(pxe.get("isoImageFileUrl") or ""),
            dracut_package_info=DracutPackageInfo.from_dict(os_.get("dracutPackageInfo")),
        )
        saved.validate()
        return saved


def load_saved_configs(path: str | Path) -> Optional[SavedConfigs]:
    p = Path(path)
    if not p.exists():
        return None

    data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Saved configs file must be an object/dict, got {type(data)}")
    return SavedConfigs.from_dict(data)


def save_saved_configs(path: str | Path, saved: SavedConfigs) -> None:
    saved.validate()
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(yaml.safe_dump(saved.to_dict(), sort_keys=False), encoding="utf-8")


def _join_args(*parts: str) -> str:
    return " ".join(p.strip() for p in parts if p and p.strip())


def merge_saved_configs(
    existing: Optional[SavedConfigs],
    *,
    extra_command_line: str,
    pxe_iso_image_base_url: str,
    pxe_iso_image_file_url: str,
    dracut_package_info: Optional[DracutPackageInfo],
) -> SavedConfigs:
    """Merge this run's options into the configuration saved by previous runs.

    - Kernel extra arguments concatenate: saved first, then new.
    - A PXE url given in this run replaces the saved one and clears the other form.
    - dracut package info is None when the rootfs was not expanded this run;
      the saved value is then carried forward.
    """

    if pxe_iso_image_base_url and pxe_iso_image_file_url:
        raise ConfigConflictError("pxe: isoImageBaseUrl and isoImageFileUrl cannot both be set")

    prev = existing or SavedConfigs()

    merged = SavedConfigs(
        extra_command_line=_join_args(prev.extra_command_line, extra_command_line),
        pxe_iso_image_base_url=prev.pxe_iso_image_base_url,
        pxe_iso_image_file_url=prev.pxe_iso_image_file_url,
        dracut_package_info=dracut_package_info if dracut_package_info is not None else prev.dracut_package_info,
    )

    if pxe_iso_image_base_url:
        merged = replace(merged, pxe_iso_image_base_url=pxe_iso_image_base_url, pxe_iso_image_file_url="")
    if pxe_iso_image_file_url:
        merged = replace(merged, pxe_iso_image_file_url=pxe_iso_image_file_url, pxe_iso_image_base_url="")

    return merged


def update_saved_configs(
    path: str | Path,
    *,
    extra_command_line: str,
    pxe_iso_image_base_url: str,
    pxe_iso_image_file_url: str,
    dracut_package_info: Optional[DracutPackageInfo],
) -> Tuple[Optional[SavedConfigs], SavedConfigs]:
    """Load, merge and persist the saved configs at `path` (created if missing).

    Returns the previously saved configs (None on a first run) and the merged ones.
    """

    existing = load_saved_configs(path)
    merged = merge_saved_configs(
        existing,
        extra_command_line=extra_command_line,
        pxe_iso_image_base_url=pxe_iso_image_base_url,
        pxe_iso_image_file_url=pxe_iso_image_file_url,
        dracut_package_info=dracut_package_info,
    )
    save_saved_configs(path, merged)
    logger.debug("Saved configs updated at %s", path)
    return existing, merged
