"""Everyday Linux utilities over a small per-node virtual filesystem.

File contents are rendered from the cluster view when read, so
``cat /sys/class/infiniband/mlx5_0/ports/1/state`` and ``ibstat`` never
disagree. ``grep``/``head``/``tail``/``wc``/``sort`` read files here and
share their filtering with shell pipelines.
"""

from __future__ import annotations

import logging
import posixpath
import re
from typing import Callable, Optional

from clustersim import pipeline
from clustersim.parser import ParsedCommand, split_pipeline, tokenize
from clustersim.simulators.base import (
    CommandContext,
    CommandResult,
    SimulatorMetadata,
    error,
    handle_help_version,
    resolve_node,
    success,
)
from clustersim.state.models import Node

LOGGER = logging.getLogger(__name__)

MGMT_INTERFACE = "enp226s0"
MGMT_MAC_PREFIX = "b8:ce:f6:10:00"

_SYSFS_STATES = {"Down": "1: DOWN", "Init": "2: INIT", "Armed": "3: ARMED", "Active": "4: ACTIVE", "Polling": "1: DOWN"}

_PACKAGES = (
    ("nvidia-driver-{major}", "{driver}-0ubuntu1", "NVIDIA driver metapackage"),
    ("nvidia-fabricmanager-{major}", "{driver}-1", "Fabric Manager for NVSwitch based systems"),
    ("datacenter-gpu-manager", "1:3.3.5", "NVIDIA Data Center GPU Manager (DCGM)"),
    ("cuda-toolkit-{cuda_pkg}", "{cuda}.2-1", "CUDA Toolkit meta-package"),
    ("nvsm", "23.09.04", "NVIDIA System Management"),
    ("mlnx-ofed-kernel-utils", "23.10-OFED.23.10.1.1.9.1", "Userspace tools to restart and tune mlnx-ofed kernel modules"),
    ("infiniband-diags", "2307mlnx47-1.2310111", "InfiniBand diagnostic programs"),
    ("mft", "4.26.1-3", "Mellanox Firmware Tools"),
    ("slurm-client", "23.02.7-1", "SLURM client side commands"),
    ("docker-ce", "5:24.0.7-1~ubuntu.22.04~jammy", "Docker: the open-source application container engine"),
    ("nvidia-container-toolkit", "1.14.3-1", "NVIDIA Container toolkit"),
)


def default_environment(node: Node, context: CommandContext) -> dict[str, str]:
    env = {
        "HOME": "/root" if context.user == "root" else f"/home/{context.user}",
        "USER": context.user,
        "HOSTNAME": node.hostname,
        "SHELL": "/bin/bash",
        "PWD": context.cwd,
        "PATH": f"/usr/local/cuda-{node.cuda_version}/bin:/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin",
        "LD_LIBRARY_PATH": f"/usr/local/cuda-{node.cuda_version}/lib64",
        "CUDA_HOME": f"/usr/local/cuda-{node.cuda_version}",
        "LANG": "en_US.UTF-8",
    }
    env.update(context.environment)
    return env


def virtual_files(node: Node, context: CommandContext) -> dict[str, str]:
    """Path to content for every readable file on ``node``."""
    cluster = context.cluster.get_cluster()
    partitions = "\n".join(
        f"PartitionName={p.name} Nodes={','.join(p.nodes)} Default={'YES' if p.default else 'NO'} MaxTime={p.max_time} State={p.state}"
        for p in cluster.slurm_config.partitions
    )
    gres = node.gpus[0].type.lower() if node.gpus else "none"
    files = {
        "/etc/hostname": f"{node.hostname}\n",
        "/etc/os-release": (
            f'PRETTY_NAME="{node.os_version}"\nNAME="Ubuntu"\nVERSION_ID="{node.os_version.split()[1][:5]}"\n'
            'ID=ubuntu\nID_LIKE=debian\n'
        ),
        "/etc/hosts": "127.0.0.1 localhost\n" + "".join(
            f"10.141.0.{i + 2} {n.hostname}\n" for i, n in enumerate(cluster.nodes)
        ),
        "/etc/fstab": "".join(f"{m.filesystem} {m.mount_point} {m.fs_type} defaults 0 0\n" for m in node.storage),
        "/etc/slurm/slurm.conf": (
            f"ClusterName={cluster.slurm_config.cluster_name}\nSlurmctldHost={cluster.slurm_config.controller}\n"
            "GresTypes=gpu\nSelectType=select/cons_tres\n"
            f"NodeName={node.hostname} Gres=gpu:{gres}:{len(node.gpus)} CPUs={node.cpu_count} "
            f"RealMemory={node.ram_total_gb * 1024} State=UNKNOWN\n{partitions}\n"
        ),
        "/etc/slurm/gres.conf": "".join(
            f"NodeName={node.hostname} Name=gpu Type={gres} File=/dev/nvidia{g.id}\n" for g in node.gpus
        ),
        "/etc/nvidia-container-runtime/config.toml": (
            'disable-require = false\n\n[nvidia-container-cli]\nenvironment = []\nldconfig = "@/sbin/ldconfig.real"\n'
            'load-kmods = true\n\n[nvidia-container-runtime]\nlog-level = "info"\nmode = "auto"\n'
        ),
        "/proc/driver/nvidia/version": (
            f"NVRM version: NVIDIA UNIX x86_64 Kernel Module  {node.nvidia_driver_version}\n"
            "GCC version:  gcc version 11.4.0 (Ubuntu 11.4.0-1ubuntu1~22.04)\n"
        ),
        "/proc/meminfo": (
            f"MemTotal:       {node.ram_total_gb * 1024 * 1024} kB\n"
            f"MemFree:        {(node.ram_total_gb - node.ram_used_gb) * 1024 * 1024} kB\n"
        ),
        "/proc/cpuinfo": "".join(
            f"processor\t: {i}\nmodel name\t: {node.cpu_model}\n\n" for i in range(min(node.cpu_count, 4))
        ),
        "/root/README.txt": "Cluster training environment. Try: nvidia-smi, sinfo, ibstat, dcgmi diag -r 1\n",
        "/root/train.sbatch": (
            "#!/bin/bash\n#SBATCH --job-name=train\n#SBATCH --gres=gpu:8\n#SBATCH --partition=batch\n"
            "srun python train.py\n"
        ),
    }
    for gpu in node.gpus:
        files[f"/proc/driver/nvidia/gpus/{gpu.pci_address[4:].lower()}/information"] = (
            f"Model: \t\t {gpu.name}\nGPU UUID: \t {gpu.uuid}\nBus Location: \t {gpu.pci_address[4:].lower()}\n"
        )
    for hca in node.hcas:
        files[f"/sys/class/infiniband/{hca.dev_name}/fw_ver"] = f"{hca.firmware_version}\n"
        for port in hca.ports:
            base = f"/sys/class/infiniband/{hca.dev_name}/ports/{port.port_number}"
            files[f"{base}/state"] = f"{_SYSFS_STATES.get(port.state, port.state)}\n"
            files[f"{base}/rate"] = f"{port.rate} Gb/sec (4X)\n"
            files[f"{base}/lid"] = f"0x{port.lid:x}\n"
    return files


def list_directory(files: dict[str, str], path: str) -> Optional[list[tuple[str, bool]]]:
    """Immediate children of ``path`` as ``(name, is_dir)``; None if not a directory."""
    prefix = path.rstrip("/") + "/"
    children: dict[str, bool] = {}
    for file_path in files:
        if not file_path.startswith(prefix):
            continue
        rest = file_path[len(prefix):]
        name, sep, _ = rest.partition("/")
        children[name] = children.get(name, False) or bool(sep)
    if not children and path not in ("/", "/root", "/tmp", "/home"):
        return None
    return sorted(children.items())


def interfaces(node: Node, context: CommandContext) -> list[dict]:
    index = context.cluster.get_cluster().nodes.index(node)
    result = [
        {"name": "lo", "state": "UNKNOWN", "mac": "00:00:00:00:00:00", "ip": "127.0.0.1/8", "mtu": 65536, "speed": None},
        {
            "name": MGMT_INTERFACE,
            "state": "UP",
            "mac": f"{MGMT_MAC_PREFIX}:{index:02x}",
            "ip": f"10.141.0.{index + 2}/16",
            "mtu": 1500,
            "speed": 100000,
        },
    ]
    for hca in node.hcas:
        for port in hca.ports:
            up = port.state == "Active"
            result.append(
                {
                    "name": f"ibp{hca.id}s0",
                    "state": "UP" if up else "DOWN",
                    "mac": port.guid[2:],
                    "ip": f"192.168.{hca.id}.{index + 10}/24" if up else None,
                    "mtu": 4092,
                    "speed": port.rate * 1000 if up else None,
                }
            )
    return result


class LinuxUtilsSimulator:
    """Simulates general-purpose shell utilities on the current node."""

    METADATA = SimulatorMetadata(
        name="linux-utils",
        version="1.0",
        description="Common Linux utilities",
        commands=(
            "pwd", "ls", "cat", "echo", "env", "ip", "ethtool", "nvcc", "dpkg",
            "grep", "head", "tail", "wc", "sort",
        ),
        value_flags=("list",),
    )

    def __init__(self):
        self._handlers: dict[str, Callable[[ParsedCommand, CommandContext, Node], CommandResult]] = {
            "pwd": self._pwd,
            "ls": self._ls,
            "cat": self._cat,
            "echo": self._echo,
            "env": self._env,
            "ip": self._ip,
            "ethtool": self._ethtool,
            "nvcc": self._nvcc,
            "dpkg": self._dpkg,
        }

    def describe(self) -> SimulatorMetadata:
        return self.METADATA

    def execute(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        node = resolve_node(context)
        if node is None:
            return error(f"{parsed.base_command}: node {context.current_node} not found")
        if pipeline.is_filter(parsed.base_command):
            return self._file_filter(parsed, context, node)
        handler = self._handlers.get(parsed.base_command)
        if handler is None:
            return error(f"{parsed.base_command}: command not found", 127)
        if parsed.base_command not in ("echo", "ls", "ip") and parsed.has_flag("help"):
            handled = handle_help_version(parsed, context, "", short_help=False, short_version=False)
            if handled is not None:
                return handled
        return handler(parsed, context, node)

    def _resolve(self, context: CommandContext, path: str) -> str:
        if path == "~" or path.startswith("~/"):
            path = "/root" + path[1:]
        return posixpath.normpath(posixpath.join(context.cwd, path))

    def _raw_args(self, parsed: ParsedCommand) -> list[str]:
        """Tokens after the command name, before any pipe, as the user typed them."""
        return tokenize(split_pipeline(parsed.raw)[0])[1:]

    def _pwd(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        return success(f"{context.cwd}\n")

    def _ls(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        files = virtual_files(node, context)
        options = "".join(name for name in parsed.flags if len(name) <= 3)
        targets = [a for a in self._raw_args(parsed) if not a.startswith("-")] or [context.cwd]
        long_format = "l" in options
        show_all = "a" in options
        blocks = []
        exit_code = 0
        for target in targets:
            path = self._resolve(context, target)
            if path in files:
                entries = [(posixpath.basename(path), False)]
            else:
                entries = list_directory(files, path)
                if entries is None:
                    blocks.append(f"ls: cannot access '{target}': No such file or directory")
                    exit_code = 2
                    continue
            if show_all:
                entries = [(".", True), ("..", True)] + entries
            if long_format:
                lines = [f"total {len(entries) * 4}"]
                for name, is_dir in entries:
                    size = 4096 if is_dir else len(files.get(posixpath.join(path, name), files.get(path, "")))
                    mode = "drwxr-xr-x" if is_dir else "-rw-r--r--"
                    lines.append(f"{mode} 1 root root {size:>6} Jan 15 08:00 {name}")
                text = "\n".join(lines)
            else:
                text = "  ".join(name for name, _ in entries)
            blocks.append(f"{target}:\n{text}" if len(targets) > 1 else text)
        output = "\n".join(b for b in blocks if b)
        return CommandResult(output=output + "\n" if output else "", exit_code=exit_code)

    def _cat(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        paths = [a for a in self._raw_args(parsed) if not a.startswith("-")]
        if not paths:
            return success("")
        files = virtual_files(node, context)
        chunks = []
        for target in paths:
            path = self._resolve(context, target)
            if path in files:
                chunks.append(files[path])
            elif list_directory(files, path) is not None:
                return error(f"cat: {target}: Is a directory", 1)
            else:
                return error(f"cat: {target}: No such file or directory", 1)
        text = "".join(chunks)
        if parsed.has_flag("n", "number"):
            text = "".join(f"{i:>6}\t{line}\n" for i, line in enumerate(text.splitlines(), 1))
        return success(text)

    def _file_filter(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        """Standalone ``grep PATTERN FILE`` and friends: read files, then filter."""
        args = self._raw_args(parsed)
        files = virtual_files(node, context)
        operands = [a for a in args if not a.startswith("-")]
        needs_pattern = parsed.base_command == "grep" and not any(a.startswith("-e") for a in args)
        file_args = operands[1:] if needs_pattern else operands
        # numeric option values ("head -n 5") are not files
        file_args = [a for a in file_args if not a.isdigit()]
        if not file_args:
            return error(f"{parsed.base_command}: no input files (use it after a pipe)", 2)
        text = ""
        for target in file_args:
            path = self._resolve(context, target)
            if path not in files:
                return error(f"{parsed.base_command}: {target}: No such file or directory", 2)
            text += files[path]
        filter_args = [a for a in args if a not in file_args]
        output, exit_code = pipeline.FILTERS[parsed.base_command](filter_args, text)
        return CommandResult(output=output, exit_code=exit_code)

    def _echo(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        args = self._raw_args(parsed)
        newline = True
        if args and args[0] == "-n":
            newline = False
            args = args[1:]
        env = default_environment(node, context)
        text = re.sub(r"\$\{?(\w+)\}?", lambda m: env.get(m.group(1), ""), " ".join(args))
        return success(text + ("\n" if newline else ""))

    def _env(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        env = default_environment(node, context)
        return success("".join(f"{key}={value}\n" for key, value in sorted(env.items())))

    def _ip(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        args = [a for a in self._raw_args(parsed) if not a.startswith("-")]
        brief = parsed.has_flag("br", "brief")
        obj = args[0] if args else ""
        ifaces = interfaces(node, context)
        if "dev" in args and args.index("dev") + 1 < len(args):
            wanted = args[args.index("dev") + 1]
            ifaces = [i for i in ifaces if i["name"] == wanted]
            if not ifaces:
                return error(f'Device "{wanted}" does not exist.', 1)
        if obj in ("a", "addr", "address"):
            if brief:
                return success("".join(f"{i['name']:<17}{i['state']:<15}{i['ip'] or ''}\n" for i in ifaces))
            lines = []
            for n, iface in enumerate(ifaces, 1):
                flags = "LOOPBACK,UP,LOWER_UP" if iface["name"] == "lo" else (
                    "BROADCAST,MULTICAST,UP,LOWER_UP" if iface["state"] == "UP" else "BROADCAST,MULTICAST"
                )
                lines.append(f"{n}: {iface['name']}: <{flags}> mtu {iface['mtu']} state {iface['state']}")
                lines.append(f"    link/{'infiniband' if iface['name'].startswith('ib') else 'ether'} {iface['mac']}")
                if iface["ip"]:
                    lines.append(f"    inet {iface['ip']} scope global {iface['name']}")
            return success("\n".join(lines) + "\n")
        if obj == "link":
            if brief:
                return success("".join(f"{i['name']:<17}{i['state']:<15}{i['mac']}\n" for i in ifaces))
            lines = [f"{n}: {i['name']}: mtu {i['mtu']} state {i['state']}" for n, i in enumerate(ifaces, 1)]
            return success("\n".join(lines) + "\n")
        if obj in ("r", "route"):
            lines = [f"default via 10.141.0.1 dev {MGMT_INTERFACE} proto static", f"10.141.0.0/16 dev {MGMT_INTERFACE} proto kernel scope link"]
            lines.extend(
                f"192.168.{i['name'][3:-2]}.0/24 dev {i['name']} proto kernel scope link" for i in ifaces if i["name"].startswith("ib") and i["ip"]
            )
            return success("\n".join(lines) + "\n")
        return error('Usage: ip [ OPTIONS ] OBJECT { COMMAND | help }\nwhere  OBJECT := { link | address | route }', 255)

    def _ethtool(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        args = self._raw_args(parsed)
        names = [a for a in args if not a.startswith("-")]
        if not names:
            return error("ethtool: bad command line argument(s)\nFor more information run ethtool -h", 1)
        iface = next((i for i in interfaces(node, context) if i["name"] == names[-1]), None)
        if iface is None:
            return error(f"netlink error: no device matches name ({names[-1]})", 1)
        if parsed.has_flag("i", "driver"):
            driver = "mlx5_core" if iface["name"].startswith("ib") else "igb"
            return success(f"driver: {driver}\nversion: 23.10-1.1.9\nbus-info: {iface['name']}\n")
        speed = f"{iface['speed']}Mb/s" if iface["speed"] else "Unknown!"
        lines = [
            f"Settings for {iface['name']}:",
            f"\tSpeed: {speed}",
            "\tDuplex: Full" if iface["speed"] else "\tDuplex: Unknown! (255)",
            "\tAuto-negotiation: on",
            f"\tLink detected: {'yes' if iface['state'] in ('UP', 'UNKNOWN') else 'no'}",
        ]
        return success("\n".join(lines) + "\n")

    def _nvcc(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        if not parsed.has_flag("version", "V"):
            return error("nvcc fatal   : No input files specified; use option --help for more information", 1)
        return success(
            "nvcc: NVIDIA (R) Cuda compiler driver\n"
            "Copyright (c) 2005-2023 NVIDIA Corporation\n"
            f"Cuda compilation tools, release {node.cuda_version}, V{node.cuda_version}.140\n"
            f"Build cuda_{node.cuda_version}.r{node.cuda_version}/compiler.33191640_0\n"
        )

    def _dpkg(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        if not parsed.has_flag("l", "list"):
            return error("dpkg: error: need an action option\n\nType dpkg --help for help.", 2)
        pattern = parsed.get_flag_str("l", "list") or (parsed.args[0] if parsed.args else None)
        values = {
            "major": node.nvidia_driver_version.split(".")[0],
            "driver": node.nvidia_driver_version,
            "cuda": node.cuda_version,
            "cuda_pkg": node.cuda_version.replace(".", "-"),
        }
        rows = [(name.format(**values), version.format(**values), desc) for name, version, desc in _PACKAGES]
        if pattern:
            regex = re.compile("^" + re.escape(pattern).replace(r"\*", ".*") + "$")
            rows = [r for r in rows if regex.match(r[0])]
            if not rows:
                return error(f"dpkg-query: no packages found matching {pattern}", 1)
        lines = [
            "Desired=Unknown/Install/Remove/Purge/Hold",
            "||/ Name                           Version                          Architecture Description",
            "+++-==============================-================================-============-===============",
        ]
        lines.extend(f"ii  {name:<30} {version:<32} amd64        {desc}" for name, version, desc in rows)
        return success("\n".join(lines) + "\n")
