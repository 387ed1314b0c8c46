"""Text transforms over grub.cfg contents.

Every function takes the whole configuration as a string and returns the
rewritten string; nothing here touches the filesystem. Commands are handled
one per line (`linux <path> <args...>`, `initrd <path>`, `search ...`), with
quoted arguments kept intact. Rewritten lines keep their indentation and are
re-joined with single spaces.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit, urlunsplit

from .errors import GrubConfigError
from .media import ISO_INITRD_PATH, ISO_KERNEL_PATH, LIVE_OS_DIR, LIVE_OS_IMAGE

logger = logging.getLogger(__name__)

LINUX_COMMANDS = ("linux", "linux16", "linuxefi")
INITRD_COMMANDS = ("initrd", "initrd16", "initrdefi")

SEARCH_COMMAND_TEMPLATE = "search --label {label} --set root"
ROOT_VALUE_LIVE_OS_TEMPLATE = "live:LABEL={label}"
ROOT_VALUE_PXE_TEMPLATE = "live:{url}"

LIVE_OS_KERNEL_ARGS = (
    "rd.shell",
    "rd.live.image",
    f"rd.live.dir={LIVE_OS_DIR}",
    f"rd.live.squashimg={LIVE_OS_IMAGE}",
    "rd.live.overlay=1",
    "rd.live.overlay.overlayfs",
    "rd.live.overlay.nouserconfirmprompt",
)
PXE_KERNEL_ARGS = ("ip=dhcp", "rd.live.azldownloader=enable")

SELINUX_ARG_NAMES = ("security", "selinux", "enforcing")
SELINUX_DISABLED_ARG = "selinux=0"

# A word may mix bare and quoted parts (opt="a b"); an unbalanced quote is a plain character.
_TOKEN_RE = re.compile(r'(?:"(?:\\.|[^"\\])*"|\'[^\']*\'|\S)+')
_MKCONFIG_RE = re.compile(r"^#.*generated by grub2?-mkconfig|^### BEGIN /etc/grub\.d/", re.MULTILINE)


@dataclass
class _Command:
    indent: str
    tokens: List[str]

    @property
    def name(self) -> str:
        return self.tokens[0]

    def render(self) -> str:
        return self.indent + " ".join(self.tokens)


def _parse(line: str) -> Optional[_Command]:
    stripped = line.lstrip()
    if not stripped or stripped.startswith("#"):
        return None
    return _Command(indent=line[: len(line) - len(stripped)], tokens=_TOKEN_RE.findall(stripped))


def split_args(text: str) -> List[str]:
    return _TOKEN_RE.findall(text or "")


def _rewrite_lines(content: str, names: Sequence[str], fn: Callable[[_Command], Optional[_Command]]) -> Tuple[str, int]:
    """Apply `fn` to every command in `names`; returning None drops the line."""

    out: List[str] = []
    count = 0
    for line in content.splitlines(keepends=True):
        body = line.rstrip("\r\n")
        eol = line[len(body):]
        cmd = _parse(body)
        if cmd is None or cmd.name not in names:
            out.append(line)
            continue
        count += 1
        new = fn(cmd)
        if new is not None:
            out.append(new.render() + eol)
    return "".join(out), count


def _rewrite_kernel_args(content: str, fn: Callable[[List[str]], List[str]]) -> str:
    def apply(cmd: _Command) -> _Command:
        if len(cmd.tokens) < 2:
            raise GrubConfigError(f"kernel command has no path: {cmd.render().strip()}")
        cmd.tokens = cmd.tokens[:2] + fn(cmd.tokens[2:])
        return cmd

    content, count = _rewrite_lines(content, LINUX_COMMANDS, apply)
    if count == 0:
        raise GrubConfigError("no linux command found in grub.cfg")
    return content


def is_grub_mkconfig_config(content: str) -> bool:
    return bool(_MKCONFIG_RE.search(content))


def replace_search_command_all(content: str, search_command: str) -> str:
    new_tokens = split_args(search_command)

    def apply(cmd: _Command) -> _Command:
        cmd.tokens = list(new_tokens)
        return cmd

    content, count = _rewrite_lines(content, ("search",), apply)
    logger.debug("Replaced %d search command(s)", count)
    return content


def remove_command_all(content: str, command: str) -> str:
    content, count = _rewrite_lines(content, (command,), lambda cmd: None)
    logger.debug("Removed %d %s command(s)", count, command)
    return content


def find_first_path(content: str, names: Sequence[str]) -> str:
    for line in content.splitlines():
        cmd = _parse(line)
        if cmd is not None and cmd.name in names and len(cmd.tokens) >= 2:
            return cmd.tokens[1]
    raise GrubConfigError(f"no {'/'.join(names)} command found in grub.cfg")


def set_path_all(content: str, names: Sequence[str], new_path: str) -> str:
    """Replace the path argument of every `names` command."""

    def apply(cmd: _Command) -> _Command:
        if len(cmd.tokens) < 2:
            raise GrubConfigError(f"{cmd.name} command has no path: {cmd.render().strip()}")
        cmd.tokens[1] = new_path
        return cmd

    content, count = _rewrite_lines(content, names, apply)
    if count == 0:
        raise GrubConfigError(f"no {'/'.join(names)} command found in grub.cfg")
    return content


def replace_token(content: str, old: str, new: str) -> str:
    """Replace every whitespace-delimited occurrence of `old` with `new`."""

    if not old:
        raise GrubConfigError("cannot replace an empty token")
    pattern = re.compile(r"(?<!\S)" + re.escape(old) + r"(?!\S)")
    return pattern.sub(lambda m: new, content)


def _arg_name(arg: str) -> str:
    return arg.split("=", 1)[0]


def replace_kernel_arg_value_all(content: str, name: str, value: str) -> str:
    """Set `name=value` on every kernel command that already has a `name=` argument."""

    found = 0

    def fn(args: List[str]) -> List[str]:
        nonlocal found
        out = []
        for a in args:
            if "=" in a and _arg_name(a) == name:
                found += 1
                a = f"{name}={value}"
            out.append(a)
        return out

    content = _rewrite_kernel_args(content, fn)
    if found == 0:
        raise GrubConfigError(f"no '{name}=' kernel argument found in grub.cfg")
    return content


def set_selinux_disabled_all(content: str) -> str:
    def fn(args: List[str]) -> List[str]:
        kept = [a for a in args if _arg_name(a) not in SELINUX_ARG_NAMES]
        return kept + [SELINUX_DISABLED_ARG]

    return _rewrite_kernel_args(content, fn)


def append_kernel_args_all(content: str, args: Sequence[str]) -> str:
    extra = list(args)
    return _rewrite_kernel_args(content, lambda current: current + extra)


def _last_index_of(args: List[str], block: List[str]) -> int:
    for start in range(len(args) - len(block), -1, -1):
        if args[start : start + len(block)] == block:
            return start
    return -1


def strip_live_os_args_all(content: str, previous_extra_command_line: str = "") -> str:
    """Drop LiveOS arguments appended by an earlier run, so they are not appended twice.

    The LiveOS arguments are removed as one contiguous block, together with
    the previous extra command line when that follows them exactly. Arguments
    elsewhere on the line are left alone, even when they look alike.
    """

    template = list(LIVE_OS_KERNEL_ARGS)
    previous = split_args(previous_extra_command_line)

    def fn(args: List[str]) -> List[str]:
        if previous and args[-len(template) - len(previous):] == template + previous:
            return args[: -len(template) - len(previous)]
        start = _last_index_of(args, template)
        if start < 0:
            return args
        return args[:start] + args[start + len(template):]

    try:
        return _rewrite_kernel_args(content, fn)
    except GrubConfigError:
        return content


def join_url(base_url: str, name: str) -> str:
    parts = urlsplit(base_url)
    path = parts.path.rstrip("/") + "/" + name.lstrip("/")
    return urlunsplit(parts._replace(path=path))


def resolve_pxe_image_url(base_url: str, file_url: str, image_name: str) -> str:
    """Full URL the network-boot initrd downloads the ISO from."""

    if base_url and file_url:
        raise GrubConfigError("cannot set both iso image base url and full image url at the same time")
    if file_url:
        return file_url
    if not base_url:
        # No server configured yet: the image name alone, relative to wherever
        # the PXE server ends up serving it from.
        return image_name
    return join_url(base_url, image_name)


def rewrite_iso_grub_cfg(
    content: str,
    *,
    volume_label: str,
    extra_command_line: str,
    previous_extra_command_line: str = "",
) -> str:
    """Point a disk grub.cfg (or an earlier ISO one) at the LiveOS media."""

    content = strip_live_os_args_all(content, previous_extra_command_line)
    content = replace_search_command_all(content, SEARCH_COMMAND_TEMPLATE.format(label=volume_label))

    if is_grub_mkconfig_config(content):
        content = set_path_all(content, LINUX_COMMANDS, ISO_KERNEL_PATH)
        content = set_path_all(content, INITRD_COMMANDS, ISO_INITRD_PATH)
    else:
        # The same path can be referenced from several places (variables,
        # multiple entries): capture the old value first, then swap every
        # occurrence of it.
        old_linux_path = find_first_path(content, LINUX_COMMANDS)
        content = replace_token(content, old_linux_path, ISO_KERNEL_PATH)
        old_initrd_path = find_first_path(content, INITRD_COMMANDS)
        content = replace_token(content, old_initrd_path, ISO_INITRD_PATH)

    content = replace_kernel_arg_value_all(content, "root", ROOT_VALUE_LIVE_OS_TEMPLATE.format(label=volume_label))
    content = set_selinux_disabled_all(content)
    content = append_kernel_args_all(content, list(LIVE_OS_KERNEL_ARGS) + split_args(extra_command_line))
    return content


def derive_pxe_grub_cfg(iso_content: str, *, image_url: str) -> str:
    """Derive the network-boot grub.cfg from an already rewritten ISO grub.cfg."""

    content = remove_command_all(iso_content, "search")
    content = replace_kernel_arg_value_all(content, "root", ROOT_VALUE_PXE_TEMPLATE.format(url=image_url))
    content = append_kernel_args_all(content, PXE_KERNEL_ARGS)
    return content
