from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import List

from .command import run_cmd

logger = logging.getLogger(__name__)


def copy_partition_files(src: str | Path, dst: str | Path) -> None:
    """Copy a whole filesystem tree, keeping ownership, xattrs, links and holes."""

    s = Path(src)
    d = Path(dst)
    if not s.is_dir():
        raise FileNotFoundError(str(s))

    d.mkdir(parents=True, exist_ok=True)
    run_cmd(
        [
            "cp",
            "--preserve=all",
            "--no-dereference",
            "--sparse=always",
            "-r",
            "-T",
            str(s),
            str(d),
        ]
    )


def copy_file(src: str | Path, dst: str | Path, *, no_dereference: bool = False) -> None:
    s = Path(src)
    d = Path(dst)
    d.parent.mkdir(parents=True, exist_ok=True)
    if no_dereference and s.is_symlink():
        if d.is_symlink() or d.exists():
            d.unlink()
        os.symlink(os.readlink(s), d)
        return
    shutil.copy2(s, d)


def move_file(src: str | Path, dst: str | Path) -> None:
    Path(dst).parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(src), str(dst))


def enumerate_files(root: str | Path) -> List[Path]:
    """List every non-directory entry under `root` (symlinks included, not followed)."""

    r = Path(root)
    if not r.is_dir():
        raise FileNotFoundError(str(r))

    out: List[Path] = []
    for dirpath, dirnames, filenames in os.walk(r):
        dirnames.sort()
        for name in sorted(filenames):
            out.append(Path(dirpath) / name)
        # os.walk lists symlinks to directories as dirnames; they are files to us.
        for name in list(dirnames):
            p = Path(dirpath) / name
            if p.is_symlink():
                out.append(p)
                dirnames.remove(name)
    return out
