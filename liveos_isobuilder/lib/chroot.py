from __future__ import annotations

import contextlib
import logging
from pathlib import Path
from typing import Iterator, Sequence

from .block import mounted
from .command import CmdResult, run_cmd

logger = logging.getLogger(__name__)

# Minimal bind mounts for rpm queries and initrd tooling
DEFAULT_BINDS = ("/dev", "/proc", "/sys", "/run")


def chroot_cmd(target_root: str | Path, argv: Sequence[str], *, check: bool = True) -> CmdResult:
    """Run a command inside target root."""

    return run_cmd(["chroot", str(target_root), *argv], check=check)


@contextlib.contextmanager
def chroot_binds(target_root: str | Path, binds: Sequence[str] = DEFAULT_BINDS) -> Iterator[Path]:
    """Bind the host virtual filesystems into `target_root` for the duration of the block.

    Unmounted in reverse order of mounting, including on error.
    """

    root = Path(target_root)
    with contextlib.ExitStack() as stack:
        for src in binds:
            stack.enter_context(mounted(src, root / src.lstrip("/"), options="bind", make_dir=True))
        yield root
