from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import yaml

from .errors import ConfigConflictError

PXE_URL_SCHEMES = {"http", "https", "ftp", "tftp"}


@dataclass(frozen=True)
class AdditionalFile:
    """A file to place on the ISO media, from a build-host path or inline content."""

    destination: str
    source: Optional[Path] = None
    content: Optional[str] = None
    permissions: Optional[int] = None


@dataclass(frozen=True)
class IsoOptions:
    extra_command_line: str = ""
    additional_files: Tuple[AdditionalFile, ...] = ()


@dataclass(frozen=True)
class PxeOptions:
    iso_image_base_url: str = ""
    iso_image_file_url: str = ""

    def __post_init__(self) -> None:
        if self.iso_image_base_url and self.iso_image_file_url:
            raise ConfigConflictError("pxe: isoImageBaseUrl and isoImageFileUrl cannot both be set")
        for key, value in (("isoImageBaseUrl", self.iso_image_base_url), ("isoImageFileUrl", self.iso_image_file_url)):
            if value:
                _check_url(key, value)


@dataclass(frozen=True)
class BuildOptions:
    iso: IsoOptions = field(default_factory=IsoOptions)
    pxe: PxeOptions = field(default_factory=PxeOptions)


def _check_url(key: str, value: str) -> None:
    parts = urlsplit(value)
    if parts.scheme not in PXE_URL_SCHEMES or not parts.netloc:
        raise ConfigConflictError(f"pxe: {key} must be a {'/'.join(sorted(PXE_URL_SCHEMES))} url, got {value!r}")


def _mapping(raw: Any, where: str) -> Dict[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigConflictError(f"{where} must be a mapping/object")
    return raw


def _parse_permissions(raw: Any, where: str) -> Optional[int]:
    if raw is None:
        return None
    try:
        return int(str(raw), 8)
    except ValueError as e:
        raise ConfigConflictError(f"{where}: permissions must be octal (e.g. \"0644\"), got {raw!r}") from e


def _parse_additional_file(raw: Any, index: int, base_dir: Path) -> AdditionalFile:
    where = f"iso.additionalFiles[{index}]"
    item = _mapping(raw, where)

    destination = item.get("destination")
    if not destination:
        raise ConfigConflictError(f"{where}: destination is required")

    source = item.get("source")
    content = item.get("content")
    if (source is None) == (content is None):
        raise ConfigConflictError(f"{where}: exactly one of source or content must be set")

    return AdditionalFile(
        destination=str(destination),
        source=(base_dir / str(source)) if source is not None else None,
        content=str(content) if content is not None else None,
        permissions=_parse_permissions(item.get("permissions"), where),
    )


def parse_build_options(raw: Any, *, base_dir: str | Path = ".") -> BuildOptions:
    root = _mapping(raw, "build options")
    base = Path(base_dir)

    iso_raw = _mapping(root.get("iso"), "iso")
    cmdline_raw = _mapping(iso_raw.get("kernelCommandLine"), "iso.kernelCommandLine")
    files_raw = iso_raw.get("additionalFiles") or []
    if not isinstance(files_raw, list):
        raise ConfigConflictError("iso.additionalFiles must be a list")

    files: List[AdditionalFile] = [_parse_additional_file(f, i, base) for i, f in enumerate(files_raw)]
    iso = IsoOptions(
        extra_command_line=str(cmdline_raw.get("extraCommandLine") or "").strip(),
        additional_files=tuple(files),
    )

    pxe_raw = _mapping(root.get("pxe"), "pxe")
    pxe = PxeOptions(
        iso_image_base_url=str(pxe_raw.get("isoImageBaseUrl") or ""),
        iso_image_file_url=str(pxe_raw.get("isoImageFileUrl") or ""),
    )

    return BuildOptions(iso=iso, pxe=pxe)


def load_build_options(path: Optional[str]) -> BuildOptions:
    """Load ISO/PXE options from YAML. Relative sources resolve against the file's directory."""

    if not path:
        return BuildOptions()

    p = Path(path)
    if not p.is_file():
        raise ConfigConflictError(f"build options file not found: {path}")

    if p.suffix.lower() not in {".yaml", ".yml"}:
        raise ConfigConflictError(f"build options must be YAML: {path}")

    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigConflictError(f"invalid YAML in {path}: {e}") from e
    return parse_build_options(raw, base_dir=p.resolve().parent)
