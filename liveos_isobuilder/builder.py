"""LiveOS ISO build flows.

(a) full disk image -> LiveOS ISO (+ PXE folder)
(b) LiveOS ISO -> LiveOS ISO, reusing its squashfs and initrd
(c) LiveOS ISO -> writeable disk image (optionally followed by (a))

One LiveOSIsoBuilder belongs to one build. Two builds must not share a
build directory at the same time.
"""

from __future__ import annotations

import contextlib
import logging
import tempfile
from pathlib import Path
from typing import List, Optional, Sequence

from .artifacts import IsoArtifacts, IsoWorkingDirs, classify_boot_dir_files, classify_iso_files
from .config import BuildOptions
from .dracut import get_dracut_package_info, pxe_support_gap
from .errors import CleanupError, MissingArtifactError, released_on_error, releasing
from .generators import create_squashfs_image, generate_initrd_image
from .grubcfg import derive_pxe_grub_cfg, resolve_pxe_image_url, rewrite_iso_grub_cfg
from .isomaker import FileToCopy, IsoWriter, XorrisoIsoMaker
from .lib.assets import copy_file, copy_partition_files, move_file
from .lib.block import loop_device, mounted, remove_dir, scratch_dir
from .lib.storage import DiskLayout, connect_to_existing_image, convert_to_raw, create_new_image, estimate_disk_size_mib
from .media import (
    BOOTX64_BINARY,
    GRUB_CFG_DIR,
    GRUBX64_BINARY,
    ISO_BOOTLOADERS_DIR,
    ISO_GRUB_CFG,
    LIVE_OS_DIR,
    LIVE_OS_IMAGE,
    NOPREFIX_GRUB_CFG_PATH,
    PXE_GRUB_CFG,
    VOLUME_LABEL,
    ImageNameInfo,
    image_name_from_base_name,
)
from .rootfs import (
    INITRD_ARTIFACTS_DIR,
    ISOMAKER_STAGING_DIR,
    find_kernel_version,
    populate_writeable_rootfs,
    prepare_rootfs_for_dracut,
    stage_isomaker_initrd_artifacts,
)
from .saved_configs import SAVED_CONFIGS_DIR, SAVED_CONFIGS_FILE_NAME, SavedConfigs, update_saved_configs

logger = logging.getLogger(__name__)


def additional_iso_files(options: BuildOptions) -> List[FileToCopy]:
    return [
        FileToCopy(destination=f.destination, source=f.source, content=f.content, permissions=f.permissions)
        for f in options.iso.additional_files
    ]


class LiveOSIsoBuilder:
    def __init__(
        self,
        working_dirs: IsoWorkingDirs,
        artifacts: Optional[IsoArtifacts] = None,
        iso_writer: Optional[IsoWriter] = None,
    ) -> None:
        self.working_dirs = working_dirs
        self.artifacts = artifacts or IsoArtifacts(
            saved_configs_path=working_dirs.artifacts_dir / SAVED_CONFIGS_DIR / SAVED_CONFIGS_FILE_NAME
        )
        self.iso_writer: IsoWriter = iso_writer or XorrisoIsoMaker(working_dirs.isomaker_build_dir)
        self.cleanup_dirs: List[Path] = []

    def add_cleanup_dir(self, path: str | Path) -> None:
        self.cleanup_dirs.append(Path(path))

    def clean_up(self) -> None:
        """Remove every registered directory, newest first. All are attempted."""

        error: Optional[CleanupError] = None
        for d in reversed(self.cleanup_dirs):
            try:
                remove_dir(d)
            except (OSError, CleanupError) as e:
                logger.error("Failed to remove %s: %s", d, e)
                msg = f"failed to remove ({d}): {e}"
                error = CleanupError(msg if error is None else f"{error}\n{msg}")
        self.cleanup_dirs = []
        if error is not None:
            raise error

    def update_grub_cfg(self, saved: SavedConfigs, previous_extra_command_line: str, image_name: ImageNameInfo) -> bool:
        """Rewrite the ISO grub.cfg in place and (re)generate the PXE one.

        Returns False when the PXE configuration was not generated.
        """

        a = self.artifacts
        if a.iso_grub_cfg_path is None or a.pxe_grub_cfg_path is None:
            raise MissingArtifactError(f"failed to find the grub configuration file ({ISO_GRUB_CFG})")

        content = rewrite_iso_grub_cfg(
            a.iso_grub_cfg_path.read_text(encoding="utf-8"),
            volume_label=VOLUME_LABEL,
            extra_command_line=saved.extra_command_line,
            previous_extra_command_line=previous_extra_command_line,
        )
        a.iso_grub_cfg_path.write_text(content, encoding="utf-8")

        gap = pxe_support_gap(saved.dracut_package_info)
        if gap is not None:
            # PXE output is never requested explicitly; the ISO is still built.
            logger.info("Cannot generate grub.cfg for PXE booting: %s", gap)
            if a.pxe_grub_cfg_path.exists():
                a.pxe_grub_cfg_path.unlink()
            return False

        url = resolve_pxe_image_url(saved.pxe_iso_image_base_url, saved.pxe_iso_image_file_url, image_name.name)
        a.pxe_grub_cfg_path.write_text(derive_pxe_grub_cfg(content, image_url=url), encoding="utf-8")
        return True

    def prepare_live_os_dir(
        self,
        input_saved_configs_path: Optional[Path],
        rootfs_dir: Path,
        options: BuildOptions,
        image_name: ImageNameInfo,
    ) -> None:
        logger.debug("Creating LiveOS directory from %s", rootfs_dir)
        wd = self.working_dirs

        kernel_version = find_kernel_version(rootfs_dir)
        dracut_info = get_dracut_package_info(rootfs_dir)

        artifacts = classify_boot_dir_files(rootfs_dir, wd.artifacts_dir)
        artifacts.kernel_version = kernel_version
        artifacts.dracut_package_info = dracut_info
        artifacts.saved_configs_path = wd.artifacts_dir / SAVED_CONFIGS_DIR / SAVED_CONFIGS_FILE_NAME
        self.artifacts = artifacts

        if input_saved_configs_path is not None and input_saved_configs_path.exists():
            copy_file(input_saved_configs_path, artifacts.saved_configs_path)

        _, merged = update_saved_configs(
            artifacts.saved_configs_path,
            extra_command_line=options.iso.extra_command_line,
            pxe_iso_image_base_url=options.pxe.iso_image_base_url,
            pxe_iso_image_file_url=options.pxe.iso_image_file_url,
            dracut_package_info=dracut_info,
        )
        # The disk's own grub.cfg has never been through a LiveOS rewrite.
        self.update_grub_cfg(merged, "", image_name)

        stage_isomaker_initrd_artifacts(rootfs_dir, artifacts)
        prepare_rootfs_for_dracut(rootfs_dir)

    def prepare_artifacts_from_full_image(
        self,
        input_saved_configs_path: Optional[Path],
        image_file: str | Path,
        options: BuildOptions,
        image_name: ImageNameInfo,
    ) -> None:
        logger.info("Preparing iso artifacts from %s", image_file)
        wd = self.working_dirs

        raw_image = convert_to_raw(image_file, wd.build_dir)
        rootfs_dir = wd.build_dir / "writeable-rootfs"
        with connect_to_existing_image(raw_image, wd.build_dir / "readonly-rootfs-mount") as image_root:
            populate_writeable_rootfs(image_root, rootfs_dir)

        self.prepare_live_os_dir(input_saved_configs_path, rootfs_dir, options, image_name)

        self.artifacts.squashfs_image_path = create_squashfs_image(rootfs_dir, wd.artifacts_dir)
        self.artifacts.initrd_image_path = generate_initrd_image(
            rootfs_dir,
            wd.artifacts_dir,
            kernel_version=self.artifacts.kernel_version,
            include_source=ISOMAKER_STAGING_DIR,
            include_target=INITRD_ARTIFACTS_DIR,
        )

    def iso_file_list(self, extra_files: Sequence[FileToCopy]) -> List[FileToCopy]:
        """Every file of the media besides what the ISO writer lays out itself.

        Files from the build options are placed last and win over carried files.
        """

        a = self.artifacts
        if a.squashfs_image_path is None:
            raise MissingArtifactError(f"failed to find the squashfs image ({LIVE_OS_IMAGE})")

        overridden = {f.destination for f in extra_files}
        files = [FileToCopy(destination=f"/{LIVE_OS_DIR}/{LIVE_OS_IMAGE}", source=a.squashfs_image_path)]
        files += [
            FileToCopy(destination=dst, source=src, no_dereference=True)
            for src, dst in sorted(a.additional_files.items(), key=lambda kv: kv[1])
            if dst not in overridden
        ]
        if a.saved_configs_path is not None and a.saved_configs_path.exists():
            files.append(
                FileToCopy(destination=f"/{SAVED_CONFIGS_DIR}/{SAVED_CONFIGS_FILE_NAME}", source=a.saved_configs_path)
            )
        if a.pxe_grub_cfg_path is not None and a.pxe_grub_cfg_path.exists():
            files.append(FileToCopy(destination=f"{GRUB_CFG_DIR}/{PXE_GRUB_CFG}", source=a.pxe_grub_cfg_path))
        if a.grub_noprefix and a.iso_grub_cfg_path is not None:
            files.append(FileToCopy(destination=NOPREFIX_GRUB_CFG_PATH, source=a.iso_grub_cfg_path))
        files += list(extra_files)
        return files

    def create_iso_image(self, extra_files: Sequence[FileToCopy], output_dir: str | Path, image_name: ImageNameInfo) -> Path:
        a = self.artifacts
        a.require_bootloaders()
        if a.initrd_image_path is None:
            raise MissingArtifactError("failed to find the initrd image (initrd.img)")
        if a.iso_grub_cfg_path is None:
            raise MissingArtifactError(f"failed to find the grub configuration file ({ISO_GRUB_CFG})")

        return self.iso_writer.make(
            initrd_path=a.initrd_image_path,
            grub_cfg_path=a.iso_grub_cfg_path,
            files=self.iso_file_list(extra_files),
            output_dir=Path(output_dir),
            image_name=image_name,
        )

    def create_iso_image_and_pxe_folder(
        self,
        extra_files: Sequence[FileToCopy],
        output_dir: str | Path,
        image_name: ImageNameInfo,
        pxe_dir: Optional[str | Path] = None,
    ) -> Path:
        iso = self.create_iso_image(extra_files, output_dir, image_name)

        if pxe_dir:
            gap = pxe_support_gap(self.artifacts.dracut_package_info)
            if gap is not None:
                logger.info("Not creating the PXE artifacts folder (%s): %s", pxe_dir, gap)
            else:
                populate_pxe_artifacts_dir(iso, self.working_dirs.build_dir, pxe_dir, image_name)

        return iso

    def create_image_from_unchanged_os(
        self,
        options: BuildOptions,
        output_dir: str | Path,
        output_name: str,
        pxe_dir: Optional[str | Path] = None,
    ) -> Path:
        """Re-package the artifacts as they are: no new squashfs, no new initrd."""

        logger.info("Creating LiveOS iso image using unchanged OS partitions")
        a = self.artifacts
        if a.saved_configs_path is None:
            a.saved_configs_path = self.working_dirs.artifacts_dir / SAVED_CONFIGS_DIR / SAVED_CONFIGS_FILE_NAME
        image_name = image_name_from_base_name(output_name)

        previous, merged = update_saved_configs(
            a.saved_configs_path,
            extra_command_line=options.iso.extra_command_line,
            pxe_iso_image_base_url=options.pxe.iso_image_base_url,
            pxe_iso_image_file_url=options.pxe.iso_image_file_url,
            dracut_package_info=a.dracut_package_info,
        )
        # No rootfs was expanded: the saved value is the only source.
        a.dracut_package_info = merged.dracut_package_info

        self.update_grub_cfg(merged, previous.extra_command_line if previous else "", image_name)
        return self.create_iso_image_and_pxe_folder(additional_iso_files(options), output_dir, image_name, pxe_dir)

    def create_writeable_image_from_squashfs(self, raw_image_file: str | Path) -> Path:
        """Write the squashfs contents onto a new ESP + ext4 raw disk image."""

        squashfs = self.artifacts.squashfs_image_path
        if squashfs is None:
            raise MissingArtifactError(f"failed to find the squashfs image ({LIVE_OS_IMAGE})")
        logger.info("Creating writeable image from squashfs (%s)", squashfs)
        wd = self.working_dirs
        wd.build_dir.mkdir(parents=True, exist_ok=True)

        with contextlib.ExitStack() as stack:
            mount_dir = stack.enter_context(scratch_dir(wd.build_dir, "tmp-squashfs-mount-"))
            dev = stack.enter_context(loop_device(squashfs, read_only=True))
            stack.enter_context(mounted(dev, mount_dir, fstype="squashfs", options="ro"))

            size_mib = estimate_disk_size_mib(mount_dir)
            logger.debug("Estimated disk size for %s: %d MiB", squashfs, size_mib)

            # The ESP is mounted at /boot/efi before the copy, so its files land on it.
            return create_new_image(
                raw_image_file,
                DiskLayout.for_root_size(size_mib),
                wd.build_dir / "writeable-raw-image",
                lambda root: copy_partition_files(mount_dir, root),
            )


def extract_iso_image_contents(build_dir: str | Path, iso_image_file: str | Path, target_dir: str | Path) -> Path:
    """Copy the whole contents of an ISO into `target_dir` (loop mount, read-only)."""

    target = Path(target_dir)
    with contextlib.ExitStack() as stack:
        mount_dir = stack.enter_context(scratch_dir(build_dir, "tmp-iso-mount-"))
        dev = stack.enter_context(loop_device(iso_image_file, read_only=True))
        stack.enter_context(mounted(dev, mount_dir, fstype="iso9660", options="ro"))
        target.mkdir(parents=True, exist_ok=True)
        copy_partition_files(mount_dir, target)
    return target


def populate_pxe_artifacts_dir(
    iso_image_path: str | Path,
    build_dir: str | Path,
    pxe_dir: str | Path,
    image_name: ImageNameInfo,
) -> Path:
    """Lay a LiveOS ISO out the way a PXE server serves it."""

    out = Path(pxe_dir)
    logger.info("Copying PXE artifacts to (%s)", out)

    remove_dir(out)
    extract_iso_image_contents(build_dir, iso_image_path, out)

    grub_dir = out / GRUB_CFG_DIR.lstrip("/")
    pxe_cfg = grub_dir / PXE_GRUB_CFG
    if not pxe_cfg.exists():
        raise MissingArtifactError(f"iso image ({iso_image_path}) has no PXE grub configuration ({PXE_GRUB_CFG})")
    copy_file(pxe_cfg, grub_dir / ISO_GRUB_CFG)
    noprefix_cfg = out / NOPREFIX_GRUB_CFG_PATH.lstrip("/")
    if noprefix_cfg.exists():
        copy_file(pxe_cfg, noprefix_cfg)
    pxe_cfg.unlink()

    # PXE firmware loads the bootloaders from a flat layout.
    bootloaders_dir = out / ISO_BOOTLOADERS_DIR.lstrip("/")
    for name in (BOOTX64_BINARY, GRUBX64_BINARY):
        move_file(bootloaders_dir / name, out / name)
    remove_dir(out / ISO_BOOTLOADERS_DIR.lstrip("/").split("/")[0])

    # The livenet dracut module downloads the whole ISO at boot.
    copy_file(iso_image_path, out / image_name.name)
    return out


def create_live_os_iso_image(
    build_dir: str | Path,
    options: BuildOptions,
    image_file: str | Path,
    output_dir: str | Path,
    output_name: str,
    pxe_dir: Optional[str | Path] = None,
    input_iso_builder: Optional[LiveOSIsoBuilder] = None,
    iso_writer: Optional[IsoWriter] = None,
) -> Path:
    """Full disk image -> LiveOS ISO.

    With `input_iso_builder` (the ISO the disk image was derived from), its
    saved configs are merged and its additional files are carried over unless
    this build already produces the same destination.
    """

    builder = LiveOSIsoBuilder(IsoWorkingDirs.from_build_dir(build_dir), iso_writer=iso_writer)
    builder.working_dirs.build_dir.mkdir(parents=True, exist_ok=True)
    builder.add_cleanup_dir(builder.working_dirs.build_dir)
    image_name = image_name_from_base_name(output_name)

    with releasing(builder.clean_up, "iso build directories"):
        input_saved = input_iso_builder.artifacts.saved_configs_path if input_iso_builder else None
        builder.prepare_artifacts_from_full_image(input_saved, image_file, options, image_name)

        if input_iso_builder is not None:
            produced = set(builder.artifacts.media_destinations())
            for src, dst in input_iso_builder.artifacts.additional_files.items():
                if dst not in produced:
                    builder.artifacts.additional_files[src] = dst

        return builder.create_iso_image_and_pxe_folder(additional_iso_files(options), output_dir, image_name, pxe_dir)


def create_iso_builder_from_iso_image(
    build_dir: str | Path,
    iso_image_file: str | Path,
    iso_writer: Optional[IsoWriter] = None,
) -> LiveOSIsoBuilder:
    """Extract a LiveOS ISO and fill a builder's artifact table from it.

    The caller owns the returned builder and must call clean_up() on it.
    """

    wd = IsoWorkingDirs.from_build_dir(build_dir)
    builder = LiveOSIsoBuilder(wd, iso_writer=iso_writer)

    with released_on_error(builder.clean_up, "input iso directories"):
        wd.build_dir.mkdir(parents=True, exist_ok=True)
        builder.add_cleanup_dir(wd.build_dir)

        # Outside wd.build_dir: a later full-image build recreates that one.
        expansion_dir = Path(tempfile.mkdtemp(prefix="expanded-input-iso-", dir=str(build_dir)))
        builder.add_cleanup_dir(expansion_dir)

        extract_iso_image_contents(build_dir, iso_image_file, expansion_dir)
        builder.artifacts = classify_iso_files(expansion_dir)
    return builder


def create_iso_from_iso(
    build_dir: str | Path,
    iso_image_file: str | Path,
    options: BuildOptions,
    output_dir: str | Path,
    output_name: str,
    pxe_dir: Optional[str | Path] = None,
    *,
    rebuild_os: bool = False,
    iso_writer: Optional[IsoWriter] = None,
) -> Path:
    """LiveOS ISO -> LiveOS ISO.

    Without `rebuild_os` the squashfs and initrd are reused. With it, the
    squashfs goes through a writeable disk image and the full-image flow, so
    the initrd is regenerated too.
    """

    input_builder = create_iso_builder_from_iso_image(build_dir, iso_image_file, iso_writer=iso_writer)
    with releasing(input_builder.clean_up, "input iso directories"):
        if not rebuild_os:
            return input_builder.create_image_from_unchanged_os(options, output_dir, output_name, pxe_dir)

        image_dir = Path(tempfile.mkdtemp(prefix="writeable-image-", dir=str(build_dir)))
        input_builder.add_cleanup_dir(image_dir)
        raw_image = input_builder.create_writeable_image_from_squashfs(image_dir / "image.raw")
        return create_live_os_iso_image(
            build_dir,
            options,
            raw_image,
            output_dir,
            output_name,
            pxe_dir,
            input_iso_builder=input_builder,
            iso_writer=iso_writer,
        )


def convert_iso_to_disk_image(build_dir: str | Path, iso_image_file: str | Path, output_image_file: str | Path) -> Path:
    """LiveOS ISO -> writeable raw disk image."""

    input_builder = create_iso_builder_from_iso_image(build_dir, iso_image_file)
    with releasing(input_builder.clean_up, "input iso directories"):
        return input_builder.create_writeable_image_from_squashfs(output_image_file)
