from pathlib import Path

import pytest

from liveos_isobuilder import cli
from liveos_isobuilder.config import BuildOptions
from liveos_isobuilder.errors import MissingArtifactError


def test_parser_defaults():
    args = cli.build_parser().parse_args(["from-image", "disk.qcow2"])
    assert args.command == "from-image"
    assert args.image == "disk.qcow2"
    assert args.build_dir == "build"
    assert args.output_dir == "out"
    assert args.output_name == "liveos"
    assert args.pxe_dir is None
    assert args.config is None


def test_subcommand_required():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])


def test_from_iso_dispatch(monkeypatch):
    seen = {}

    def fake(build_dir, iso, options, output_dir, output_name, pxe_dir, *, rebuild_os):
        seen.update(build_dir=build_dir, iso=iso, options=options, pxe_dir=pxe_dir, rebuild_os=rebuild_os)
        return Path(output_dir) / f"{output_name}.iso"

    monkeypatch.setattr(cli, "create_iso_from_iso", fake)
    args = cli.build_parser().parse_args(
        ["--build-dir", "b", "from-iso", "in.iso", "--rebuild-os", "--pxe-dir", "pxe", "--output-name", "custom"]
    )

    assert cli.run(args) == Path("out/custom.iso")
    assert seen == {"build_dir": "b", "iso": "in.iso", "options": BuildOptions(), "pxe_dir": "pxe", "rebuild_os": True}


def test_to_disk_dispatch(monkeypatch):
    monkeypatch.setattr(cli, "convert_iso_to_disk_image", lambda build_dir, iso, output: Path(output))
    args = cli.build_parser().parse_args(["to-disk", "in.iso", "disk.raw"])
    assert cli.run(args) == Path("disk.raw")


def test_build_failure_exit_code(monkeypatch, tmp_path):
    def fail(args):
        raise MissingArtifactError("failed to find the squashfs image (rootfs.img)")

    monkeypatch.setattr(cli, "run", fail)
    assert cli.main(["--log", str(tmp_path / "build.log"), "to-disk", "in.iso", "disk.raw"]) == 1


def test_missing_config_exit_code(tmp_path):
    argv = ["--log", str(tmp_path / "build.log"), "from-image", "disk.raw", "--config", str(tmp_path / "nope.yaml")]
    assert cli.main(argv) == 1
