from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import Mapping, Sequence

from ..errors import CommandError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CmdResult:
    argv: list[str]
    returncode: int
    stdout: str
    stderr: str


def _fmt_argv(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(a) for a in argv)


def _log_output(p: subprocess.CompletedProcess) -> None:
    for label, text in (("STDOUT", p.stdout), ("STDERR", p.stderr)):
        if text:
            logger.debug("%s %s", label, text.strip())


def run_cmd(
    argv: Sequence[str],
    *,
    check: bool = True,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    input_text: str | None = None,
) -> CmdResult:
    """Run an external tool and return its captured output.

    The command line is logged at INFO, its output at DEBUG. A missing
    executable or (with `check`) a non-zero exit raises CommandError.
    """

    cmd = [str(a) for a in argv]
    shown = _fmt_argv(cmd)
    logger.info("CMD %s", shown)

    try:
        p = subprocess.run(
            cmd,
            input=input_text,
            text=True,
            capture_output=True,
            cwd=cwd,
            env=dict(os.environ, **(env or {})),
        )
    except FileNotFoundError as e:
        raise CommandError(f"Command not found: {cmd[0]}", argv=cmd, returncode=127, stderr=str(e)) from e

    _log_output(p)

    if check and p.returncode != 0:
        raise CommandError(
            f"Command failed ({p.returncode}): {shown}\n{p.stderr}",
            argv=cmd,
            returncode=p.returncode,
            stderr=p.stderr,
        )
    return CmdResult(argv=cmd, returncode=p.returncode, stdout=p.stdout, stderr=p.stderr)
