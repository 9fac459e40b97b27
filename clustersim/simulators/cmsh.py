"""Base Command Manager shell (``cmsh``).

``cmsh`` alone enters the interactive shell; ``cmsh -c "device; status"``
runs ``;``-separated commands from the top level and returns their
combined output. The mode (``device``, ``category``, ``partition``,
``softwareimage``) and the selected object travel in the
:class:`InteractiveState` owned by the caller.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

from clustersim.parser import ParsedCommand, tokenize
from clustersim.simulators.base import (
    CommandContext,
    CommandResult,
    InteractiveState,
    SimulatorMetadata,
    error,
    handle_help_version,
    success,
)
from clustersim.state.models import ClusterConfig, Node

LOGGER = logging.getLogger(__name__)

CMSH_VERSION = "10.0"
HEADNODE = "headnode"
MODES = ("device", "category", "partition", "softwareimage")
SOFTWARE_IMAGES = (
    ("baseos-image-v10", "/cm/images/baseos-image-v10"),
    ("maintenance-image", "/cm/images/maintenance-image"),
)

HELP = """
Cluster Management Shell (cmsh) Commands

Modes:
  device         Enter device management mode
  category       Enter category management mode
  softwareimage  Enter software image mode
  partition      Enter partition management mode

Commands (within modes):
  list           List objects in current mode
  list -d {}     JSON output
  use <object>   Select an object to work with
  show           Show details of selected object
  status         Device status (device mode)
  exit           Exit current mode or shell
"""


def make_prompt(user: str, mode: str = "", selected: Optional[str] = None) -> str:
    if not mode:
        return f"[{user}@{HEADNODE}]% "
    if selected:
        return f"[{user}@{HEADNODE}->{mode}[{selected}]]% "
    return f"[{user}@{HEADNODE}->{mode}]% "


def category_of(node: Node) -> str:
    return f"dgx-{node.system_type.split('-')[-1].lower()}"


def device_ip(cluster: ClusterConfig, node: Node) -> str:
    return f"10.141.0.{cluster.nodes.index(node) + 2}"


def device_status(node: Node) -> str:
    """BCM status column: power and reachability plus the scheduler view."""
    powered = node.bmc is None or node.bmc.power_state == "On"
    label = "UP" if powered and node.slurm_state != "down" else "DOWN"
    text = f"[{label:^8}]"
    if node.slurm_state in ("drain", "down"):
        reason = f", {node.slurm_reason}" if node.slurm_reason else ""
        text += f" (slurm: {node.slurm_state}{reason})"
    elif node.health_status != "OK":
        text += f", health check {'failed' if node.health_status == 'Critical' else 'warning'}"
    return text


class CmshSimulator:
    """Simulates ``cmsh`` in one-shot and interactive form."""

    METADATA = SimulatorMetadata(
        name="cmsh",
        version=CMSH_VERSION,
        description="Base Command Manager cluster management shell",
        commands=("cmsh",),
    )

    def describe(self) -> SimulatorMetadata:
        return self.METADATA

    def execute(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        handled = handle_help_version(parsed, context, f"cmsh version {CMSH_VERSION}\n")
        if handled is not None:
            return handled
        script = parsed.get_flag_str("c")
        if script is None and parsed.args:
            script = " ".join(parsed.args)
        if script is None:
            return CommandResult(
                output='\nCluster Management Shell (cmsh)\nType "help" for available commands.\n',
                prompt=make_prompt(context.user),
            )

        state = InteractiveState("cmsh", prompt=make_prompt(context.user))
        outputs = []
        exit_code = 0
        for line in script.split(";"):
            if not line.strip():
                continue
            result, next_state = self.execute_interactive(line, state, context)
            if result.output:
                outputs.append(result.output.rstrip("\n"))
            exit_code = exit_code or result.exit_code
            if next_state is None:
                break
            state = next_state
        output = "\n".join(outputs)
        return CommandResult(output=output + "\n" if output else "", exit_code=exit_code)

    def execute_interactive(
        self, line: str, state: InteractiveState, context: CommandContext
    ) -> tuple[CommandResult, Optional[InteractiveState]]:
        words = tokenize(line)
        if not words:
            return CommandResult(prompt=state.prompt), state
        command, args = words[0].lower(), words[1:]

        if command in MODES and not args:
            nxt = InteractiveState("cmsh", command, None, make_prompt(context.user, command))
            return CommandResult(prompt=nxt.prompt), nxt
        if command in MODES:
            # "device list" style: run the rest inside the mode
            inner = InteractiveState("cmsh", command, None, make_prompt(context.user, command))
            result, _ = self.execute_interactive(" ".join(args), inner, context)
            result.prompt = state.prompt
            return result, state
        if command in ("exit", "quit"):
            if state.mode and command == "exit":
                top = InteractiveState("cmsh", prompt=make_prompt(context.user))
                return CommandResult(prompt=top.prompt), top
            return success(""), None
        if command == "help":
            return CommandResult(output=HELP, prompt=state.prompt), state
        if command == "use":
            if not args:
                return self._fail("use: missing object name", state), state
            if not state.mode:
                return self._fail("use: enter a mode first", state), state
            if not self._exists(state.mode, args[0], context):
                return self._fail(f"Error: Object '{args[0]}' not found.", state), state
            nxt = InteractiveState("cmsh", state.mode, args[0], make_prompt(context.user, state.mode, args[0]))
            return CommandResult(prompt=nxt.prompt), nxt
        if command == "list":
            return CommandResult(output=self._list(state.mode, args, context), prompt=state.prompt), state
        if command == "show":
            return self._show(state, context), state
        if command == "status":
            if state.mode not in ("", "device"):
                return self._fail("status: only available in device mode", state), state
            return CommandResult(output=self._status(state, context), prompt=state.prompt), state
        return self._fail(f"{command}: Command not found.", state), state

    def _fail(self, message: str, state: InteractiveState) -> CommandResult:
        return CommandResult(output=message + "\n", exit_code=1, prompt=state.prompt)

    def _exists(self, mode: str, name: str, context: CommandContext) -> bool:
        cluster = context.cluster.get_cluster()
        if mode == "device":
            return name == HEADNODE or cluster.get_node(name) is not None
        if mode == "category":
            return name == "headnode" or any(category_of(n) == name for n in cluster.nodes)
        if mode == "partition":
            return name == "base"
        return any(image == name for image, _ in SOFTWARE_IMAGES)

    def _list(self, mode: str, args: list[str], context: CommandContext) -> str:
        cluster = context.cluster.get_cluster()
        if mode in ("", "device"):
            if "-d" in args:
                data = [
                    {"Hostname (key)": n.hostname, "IPAddress": device_ip(cluster, n), "Category": category_of(n)}
                    for n in cluster.nodes
                ]
                return json.dumps(data, indent=2) + "\n"
            lines = [f"{'Type':<16}{'Hostname (key)':<20}{'MAC':<20}{'Category':<14}{'IP':<15}Status"]
            lines.append(f"{'HeadNode':<16}{HEADNODE:<20}{'FA:16:3E:C4:28:1C':<20}{'headnode':<14}{'10.141.0.1':<15}[   UP   ]")
            for index, node in enumerate(cluster.nodes):
                mac = f"FA:16:3E:C4:{(0x28 + index // 256):02X}:{(0x1D + index) % 256:02X}"
                lines.append(
                    f"{'PhysicalNode':<16}{node.hostname:<20}{mac:<20}{category_of(node):<14}"
                    f"{device_ip(cluster, node):<15}{device_status(node)}"
                )
            return "\n".join(lines) + "\n"
        if mode == "category":
            counts: dict[str, int] = {}
            for node in cluster.nodes:
                counts[category_of(node)] = counts.get(category_of(node), 0) + 1
            lines = [f"{'Name (key)':<15}| Nodes", f"{'headnode':<15}| 1"]
            lines.extend(f"{name:<15}| {count}" for name, count in counts.items())
            return "\n".join(lines) + "\n"
        if mode == "partition":
            return f"{'Name (key)':<12}| {'Cluster name':<16}| Nodes\n{'base':<12}| {cluster.name:<16}| {len(cluster.nodes) + 1}\n"
        lines = [f"{'Name (key)':<22}| {'Path':<32}| {'Kernel version':<21}| Nodes"]
        kernel = cluster.nodes[0].kernel_version if cluster.nodes else ""
        for name, path in SOFTWARE_IMAGES:
            nodes = len(cluster.nodes) if name == SOFTWARE_IMAGES[0][0] else 0
            lines.append(f"{name:<22}| {path:<32}| {kernel:<21}| {nodes}")
        return "\n".join(lines) + "\n"

    def _status(self, state: InteractiveState, context: CommandContext) -> str:
        cluster = context.cluster.get_cluster()
        nodes = cluster.nodes
        if state.selected and state.selected != HEADNODE:
            nodes = [n for n in nodes if n.id == state.selected or n.hostname == state.selected]
        lines = []
        if not state.selected:
            lines.append(f"{HEADNODE + ' ':.<32} [   UP   ]")
        lines.extend(f"{node.hostname + ' ':.<32} {device_status(node)}" for node in nodes)
        return "\n".join(lines) + "\n"

    def _show(self, state: InteractiveState, context: CommandContext) -> CommandResult:
        if not state.selected:
            return self._fail('Error: No object selected. Use "use <object>" first.', state)
        cluster = context.cluster.get_cluster()
        rows: list[tuple[str, str]]
        if state.mode == "device" and state.selected != HEADNODE:
            node = cluster.get_node(state.selected)
            rows = [
                ("Hostname", node.hostname),
                ("Category", category_of(node)),
                ("IP", device_ip(cluster, node)),
                ("Status", device_status(node)),
                ("Power", node.bmc.power_state if node.bmc else "N/A"),
                ("GPU Count", str(len(node.gpus))),
                ("Slurm state", node.slurm_state),
            ]
        elif state.mode == "device":
            rows = [("Hostname", HEADNODE), ("Category", "headnode"), ("IP", "10.141.0.1"), ("Status", "[   UP   ]")]
        elif state.mode == "category":
            rows = [
                ("Name", state.selected),
                ("Software image", SOFTWARE_IMAGES[0][0]),
                ("Slurm client", "yes" if state.selected != "headnode" else "no"),
                ("Slurm submit", "yes"),
            ]
        elif state.mode == "partition":
            rows = [
                ("Name", "base"),
                ("Cluster name", cluster.name),
                ("Headnode", HEADNODE),
                ("Failover", f"{cluster.bcm_ha.primary}, {cluster.bcm_ha.secondary}" if cluster.bcm_ha.enabled else "none"),
            ]
        else:
            path = dict(SOFTWARE_IMAGES)[state.selected]
            rows = [("Name", state.selected), ("Path", path)]
        lines = ["", f"{'Parameter':<32}Value", f"{'-' * 31} {'-' * 40}"]
        lines.extend(f"{key:<32}{value}" for key, value in rows)
        return CommandResult(output="\n".join(lines) + "\n", prompt=state.prompt)
