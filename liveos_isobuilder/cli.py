from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Optional

from .builder import convert_iso_to_disk_image, create_iso_from_iso, create_live_os_iso_image
from .config import load_build_options
from .errors import LiveOSBuildError
from .logging_utils import DEFAULT_LOG_PATH, configure_logging

logger = logging.getLogger(__name__)


DEFAULT_BUILD_DIR = "build"
DEFAULT_OUTPUT_DIR = "out"
DEFAULT_OUTPUT_NAME = "liveos"


def _add_iso_output_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", default=None, help="ISO/PXE options (yaml)")
    p.add_argument("--output-dir", default=DEFAULT_OUTPUT_DIR)
    p.add_argument("--output-name", default=DEFAULT_OUTPUT_NAME, help="ISO base name (written as <name>.iso)")
    p.add_argument("--pxe-dir", default=None, help="Also export PXE artifacts to this folder")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="liveos-isobuilder")
    p.add_argument("--build-dir", default=DEFAULT_BUILD_DIR)
    p.add_argument("--log", default=DEFAULT_LOG_PATH, help="Path to build log")
    p.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    sub = p.add_subparsers(dest="command", required=True)

    from_image = sub.add_parser("from-image", help="Full disk image (raw|qcow2|vhd|vhdx) -> LiveOS ISO")
    from_image.add_argument("image")
    _add_iso_output_args(from_image)

    from_iso = sub.add_parser("from-iso", help="LiveOS ISO -> LiveOS ISO")
    from_iso.add_argument("iso")
    from_iso.add_argument(
        "--rebuild-os",
        action="store_true",
        help="Regenerate the squashfs and initrd instead of reusing them",
    )
    _add_iso_output_args(from_iso)

    to_disk = sub.add_parser("to-disk", help="LiveOS ISO -> writeable raw disk image")
    to_disk.add_argument("iso")
    to_disk.add_argument("output", help="Raw disk image to create")

    return p


def run(args: argparse.Namespace) -> Path:
    if args.command == "to-disk":
        return convert_iso_to_disk_image(args.build_dir, args.iso, args.output)

    options = load_build_options(args.config)
    if args.command == "from-image":
        return create_live_os_iso_image(
            args.build_dir,
            options,
            args.image,
            args.output_dir,
            args.output_name,
            args.pxe_dir,
        )
    return create_iso_from_iso(
        args.build_dir,
        args.iso,
        options,
        args.output_dir,
        args.output_name,
        args.pxe_dir,
        rebuild_os=bool(args.rebuild_os),
    )


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(log_path=args.log, level=getattr(logging, args.log_level))

    try:
        out = run(args)
    except LiveOSBuildError:
        logger.exception("Build failed")
        return 1

    logger.info("Created %s", out)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
