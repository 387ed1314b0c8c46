from __future__ import annotations

import json
import shutil
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

import pytest

from liveos_isobuilder import generators, isomaker
from liveos_isobuilder.errors import CommandError
from liveos_isobuilder.lib import assets, block, chroot, storage
from liveos_isobuilder.lib.command import CmdResult

PATCHED_MODULES = (assets, block, chroot, storage, generators, isomaker)

Handler = Callable[[List[str]], Optional[str]]


class FakeRunner:
    """Stands in for run_cmd: records every argv, answers from handlers.

    A handler is matched on an argv prefix (the chroot prefix is skipped, so
    "rpm" also matches `chroot <root> rpm ...`). It returns stdout or raises.
    Failures are matched the same way and exit with status 1.
    """

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.handlers: List[tuple] = []
        self.failures: List[tuple] = []
        self._loops = 0

    def on(self, prefix: Sequence[str], handler: Handler) -> None:
        self.handlers.insert(0, (list(prefix), handler))

    def fail(self, prefix: Union[str, Sequence[str]], stderr: str = "boom") -> None:
        if isinstance(prefix, str):
            prefix = [prefix]
        self.failures.insert(0, (list(prefix), stderr))

    @staticmethod
    def _command(argv: List[str]) -> List[str]:
        return argv[2:] if argv[:1] == ["chroot"] else argv

    def __call__(self, argv, *, check=True, env=None, cwd=None, input_text=None) -> CmdResult:
        argv = [str(a) for a in argv]
        self.calls.append(argv)
        cmd = self._command(argv)

        for prefix, stderr in self.failures:
            if cmd[: len(prefix)] != prefix:
                continue
            if not check:
                return CmdResult(argv=argv, returncode=1, stdout="", stderr=stderr)
            raise CommandError(f"Command failed (1): {' '.join(argv)}", argv=argv, returncode=1, stderr=stderr)

        stdout = ""
        for prefix, handler in self.handlers:
            if cmd[: len(prefix)] == prefix:
                stdout = handler(cmd) or ""
                break
        else:
            if cmd[:2] == ["losetup", "--find"]:
                stdout = f"/dev/loop{self._loops}\n"
                self._loops += 1
        return CmdResult(argv=argv, returncode=0, stdout=stdout, stderr="")

    def programs(self) -> List[str]:
        return [self._command(c)[0] for c in self.calls]

    def mounts(self) -> List[str]:
        return [c[-1] for c in self.calls if c[0] == "mount"]

    def umounts(self) -> List[str]:
        return [c[-1] for c in self.calls if c[0] == "umount"]

    def attached(self) -> List[str]:
        return [c[-1] for c in self.calls if c[:2] == ["losetup", "--find"]]

    def detached(self) -> List[str]:
        return [c[-1] for c in self.calls if c[:2] == ["losetup", "--detach"]]

    def assert_balanced(self) -> None:
        """Every mount released, innermost first, and every loop device detached."""

        stack: List[str] = []
        for c in self.calls:
            if c[0] == "mount":
                stack.append(c[-1])
            elif c[0] == "umount":
                assert stack and stack[-1] == c[-1], f"unmounted {c[-1]} while {stack} still mounted"
                stack.pop()
        assert stack == []
        assert len(self.detached()) == len(self.attached())


def copy_tree(cmd: List[str]) -> None:
    # cp ... -r -T <src> <dst>
    shutil.copytree(cmd[-2], cmd[-1], symlinks=True, dirs_exist_ok=True)


@pytest.fixture()
def fake_run(monkeypatch):
    runner = FakeRunner()
    runner.on(["cp"], copy_tree)
    for module in PATCHED_MODULES:
        monkeypatch.setattr(module, "run_cmd", runner)
    return runner


def write_files(root: Path, files: Dict[str, str]) -> Path:
    for rel, content in files.items():
        p = root / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(content, encoding="utf-8")
    return root


GRUB_CFG = """set timeout=0
search -n -u 1b2c3d4e -s
menuentry "Azure Linux" {
    linux /old/vmlinuz root=/dev/sda2 ro security=selinux selinux=1 console=tty0
    initrd /old/initrd.img
}
menuentry "Azure Linux (recovery)" {
    linux /old/vmlinuz root=/dev/sda2 ro single
    initrd /old/initrd.img
}
"""


@pytest.fixture()
def grub_cfg_text() -> str:
    return GRUB_CFG


ESP_PARTTYPE = "c12a7328-f81f-11d2-ba4b-00a0c93ec93b"
LINUX_PARTTYPE = "0fc63daf-8483-4772-8e79-3d69d8477de4"


def lsblk_json(device: str, parts: Sequence[tuple]) -> str:
    """lsblk --json output for `device` with (path, fstype, parttype) partitions."""

    children = [{"path": p, "type": "part", "fstype": f, "parttype": t} for p, f, t in parts]
    return json.dumps({"blockdevices": [{"path": device, "type": "loop", "children": children}]})


class FakeIsoWriter:
    """Records what it is asked to write; the media contents are read at call time."""

    def __init__(self) -> None:
        self.calls: List[dict] = []

    def make(self, *, initrd_path, grub_cfg_path, files, output_dir, image_name) -> Path:
        media = {}
        for f in files:
            media[f.destination] = f.content if f.content is not None else Path(f.source).read_text(encoding="utf-8")
        self.calls.append(
            {
                "initrd": Path(initrd_path).read_text(encoding="utf-8"),
                "grub_cfg": Path(grub_cfg_path).read_text(encoding="utf-8"),
                "destinations": [f.destination for f in files],
                "media": media,
            }
        )
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        iso = out / image_name.name
        iso.write_text("iso", encoding="utf-8")
        return iso


@pytest.fixture()
def iso_writer() -> FakeIsoWriter:
    return FakeIsoWriter()
