"""Filesystem tools: ``df``, ``mount`` and the Lustre client ``lfs``."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from clustersim.parser import ParsedCommand
from clustersim.simulators.base import (
    CommandContext,
    CommandResult,
    SimulatorMetadata,
    error,
    handle_help_version,
    human_size,
    resolve_node,
    success,
    usage_error,
)
from clustersim.state.models import Node, StorageMount

LOGGER = logging.getLogger(__name__)

COREUTILS_VERSION = "df (GNU coreutils) 8.32"
LUSTRE_VERSION = "lfs 2.15.4"
LUSTRE_OST_COUNT = 4

_MOUNT_OPTIONS = {
    "ext4": "rw,relatime",
    "nfs4": "rw,relatime,vers=4.2,rsize=1048576,wsize=1048576,hard,proto=tcp",
    "lustre": "rw,flock,lazystatfs,encrypt",
}


def mount_for_path(node: Node, path: str) -> Optional[StorageMount]:
    """Mount holding ``path``: the longest mount point that prefixes it."""
    best = None
    for mount in node.storage:
        mp = mount.mount_point
        if path == mp or path.startswith(mp.rstrip("/") + "/") or mp == "/":
            if best is None or len(mp) > len(best.mount_point):
                best = mount
    return best


def use_percent(used: int, total: int) -> str:
    if total <= 0:
        return "-"
    return f"{-(-used * 100 // total)}%"


class StorageSimulator:
    """Simulates ``df``, ``mount`` and ``lfs`` for the current node's mounts."""

    METADATA = SimulatorMetadata(
        name="storage",
        version="2.15.4",
        description="Filesystem and Lustre client tools",
        commands=("df", "mount", "lfs"),
        value_flags=("types",),
    )

    def __init__(self):
        self._handlers: dict[str, Callable[[ParsedCommand, CommandContext, Node], CommandResult]] = {
            "df": self._df,
            "mount": self._mount,
            "lfs": self._lfs,
        }

    def describe(self) -> SimulatorMetadata:
        return self.METADATA

    def execute(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        handler = self._handlers.get(parsed.base_command)
        if handler is None:
            return error(f"{parsed.base_command}: not a storage tool", 127)
        banner = f"{LUSTRE_VERSION}\n" if parsed.base_command == "lfs" else f"{COREUTILS_VERSION}\n"
        # df -h means human-readable, not help
        handled = handle_help_version(parsed, context, banner, short_help=False, short_version=False)
        if handled is not None:
            return handled
        node = resolve_node(context)
        if node is None:
            return error(f"{parsed.base_command}: node {context.current_node} not found")
        return handler(parsed, context, node)

    def _df(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        mounts = list(node.storage)
        # "df -h /lustre": the path is taken as the value of -h
        paths = list(parsed.args)
        for flag in ("h", "T", "i", "hT", "Th"):
            value = parsed.get_flag_str(flag)
            if value:
                paths.insert(0, value)
        if paths:
            selected = []
            for path in paths:
                mount = mount_for_path(node, path)
                if mount is None:
                    return error(f"df: {path}: No such file or directory", 1)
                selected.append(mount)
            mounts = selected

        human = parsed.has_flag("h", "human-readable", "hT", "Th")
        with_type = parsed.has_flag("T", "print-type", "hT", "Th")
        inodes = parsed.has_flag("i", "inodes")

        if inodes:
            headers = ["Filesystem", "Inodes", "IUsed", "IFree", "IUse%", "Mounted on"]
            rows = [
                [m.filesystem, m.inodes_total, m.inodes_used, m.inodes_total - m.inodes_used,
                 use_percent(m.inodes_used, m.inodes_total), m.mount_point]
                for m in mounts
            ]
        else:
            headers = ["Filesystem", "Size" if human else "1K-blocks", "Used", "Avail" if human else "Available", "Use%", "Mounted on"]
            rows = []
            for m in mounts:
                sizes = [m.size_kb, m.used_kb, m.available_kb]
                cells = [human_size(s) for s in sizes] if human else [str(s) for s in sizes]
                rows.append([m.filesystem] + cells + [use_percent(m.used_kb, m.size_kb), m.mount_point])
        if with_type:
            headers.insert(1, "Type")
            for row, m in zip(rows, mounts):
                row.insert(1, m.fs_type)

        widths = [max(len(str(r[i])) for r in [headers] + rows) for i in range(len(headers))]
        lines = []
        for row in [headers] + rows:
            cells = []
            for i, cell in enumerate(row):
                text = str(cell)
                if i == 0 or i == len(row) - 1 or (with_type and i == 1):
                    cells.append(text.ljust(widths[i]))
                else:
                    cells.append(text.rjust(widths[i]))
            lines.append(" ".join(cells).rstrip())
        return success("\n".join(lines) + "\n")

    def _mount(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        if parsed.args:
            return error("mount: only root can do that (simulated mounts are read-only)", 32)
        fs_type = parsed.get_flag_str("t", "types")
        lines = [
            "sysfs on /sys type sysfs (rw,nosuid,nodev,noexec,relatime)",
            "proc on /proc type proc (rw,nosuid,nodev,noexec,relatime)",
        ]
        if fs_type:
            lines = []
        for m in node.storage:
            if fs_type and m.fs_type != fs_type:
                continue
            lines.append(f"{m.filesystem} on {m.mount_point} type {m.fs_type} ({_MOUNT_OPTIONS.get(m.fs_type, 'rw')})")
        return success("\n".join(lines) + ("\n" if lines else ""))

    def _lustre(self, node: Node) -> Optional[StorageMount]:
        return next((m for m in node.storage if m.fs_type == "lustre"), None)

    def _lfs(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        words = parsed.args
        if not words:
            return usage_error("lfs", "no command given (try: df, check servers, quota, getstripe)", 1)
        lustre = self._lustre(node)
        if lustre is None:
            return error("lfs: no Lustre filesystem mounted", 2)
        action = words[0]
        fsname = lustre.filesystem.rsplit("/", 1)[-1]
        if action == "df":
            human = parsed.has_flag("h")
            mdt_size, mdt_used = lustre.size_kb // 200, lustre.used_kb // 400
            ost_size, ost_used = lustre.size_kb // LUSTRE_OST_COUNT, lustre.used_kb // LUSTRE_OST_COUNT

            def fmt(value: int) -> str:
                return human_size(value) if human else str(value)

            header = f"{'UUID':<26}{'bytes' if human else '1K-blocks':>14}{'Used':>14}{'Available':>14}{'Use%':>6} Mounted on"
            lines = [header]
            lines.append(
                f"{fsname + '-MDT0000_UUID':<26}{fmt(mdt_size):>14}{fmt(mdt_used):>14}{fmt(mdt_size - mdt_used):>14}"
                f"{use_percent(mdt_used, mdt_size):>6} {lustre.mount_point}[MDT:0]"
            )
            for index in range(LUSTRE_OST_COUNT):
                lines.append(
                    f"{fsname + f'-OST{index:04x}_UUID':<26}{fmt(ost_size):>14}{fmt(ost_used):>14}"
                    f"{fmt(ost_size - ost_used):>14}{use_percent(ost_used, ost_size):>6} {lustre.mount_point}[OST:{index}]"
                )
            lines.append("")
            lines.append(
                f"{'filesystem_summary:':<26}{fmt(lustre.size_kb):>14}{fmt(lustre.used_kb):>14}"
                f"{fmt(lustre.available_kb):>14}{use_percent(lustre.used_kb, lustre.size_kb):>6} {lustre.mount_point}"
            )
            return success("\n".join(lines) + "\n")
        if action == "check":
            if words[1:2] != ["servers"] and words[1:2] != ["all"]:
                return usage_error("lfs", "check: specify 'servers' or 'all'", 1)
            lines = [f"{fsname}-MDT0000-mdc: active"]
            lines.extend(f"{fsname}-OST{index:04x}-osc: active" for index in range(LUSTRE_OST_COUNT))
            return success("\n".join(lines) + "\n")
        if action == "quota":
            user = parsed.get_flag_str("u") or context.user
            lines = [
                f"Disk quotas for usr {user} (uid 0):",
                "     Filesystem  kbytes   quota   limit   grace   files   quota   limit   grace",
                f"{lustre.mount_point:>15} {lustre.used_kb // 4096:>7}       0       0       - {lustre.inodes_used // 4096:>7}       0       0       -",
            ]
            return success("\n".join(lines) + "\n")
        if action == "getstripe":
            path = words[1] if len(words) > 1 else lustre.mount_point
            if mount_for_path(node, path) is not lustre:
                return error(f"lfs getstripe: {path}: not on a Lustre filesystem", 1)
            return success(f"{path}\nstripe_count:  1 stripe_size:   1048576 pattern:       raid0 stripe_offset: -1\n")
        return usage_error("lfs", f"unknown command '{action}'", 1)
