"""InfiniBand diagnostic tools (infiniband-diags).

Port state, rate, LID and error counters come from the HCA ports of the
cluster view. The switch layer is derived: every HCA rail ``mlx5_N`` of every
node is cabled to leaf switch N, which is how DGX SuperPODs are wired.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from clustersim.parser import ParsedCommand
from clustersim.simulators.base import (
    CommandContext,
    CommandResult,
    SimulatorMetadata,
    error,
    handle_help_version,
    parse_int,
    resolve_node,
    success,
    usage_error,
)
from clustersim.state.hardware import ib_standard_name
from clustersim.state.models import HCA, ClusterConfig, IBPort, Node

LOGGER = logging.getLogger(__name__)

IB_DIAGS_VERSION = "ibstat BUILD VERSION: 2.1.0.MLNX20240128.c2a3d2b0"
SM_LID = 1
SWITCH_LID_BASE = 4000
SWITCH_GUID_BASE = 0xFC6A1C0300A00000

_CA_PART_NUMBERS = {"ConnectX-6": "MT4123", "ConnectX-7": "MT4129", "ConnectX-8": "MT4131"}
_LOGICAL_STATES = {"Down": "1: DOWN", "Init": "2: INIT", "Armed": "3: ARMED", "Active": "4: ACTIVE", "Polling": "1: DOWN"}
_PHYSICAL_STATES = {"Sleep": "1: Sleep", "Polling": "2: Polling", "Disabled": "3: Disabled", "LinkUp": "5: LinkUp"}
_ERROR_COUNTERS = (
    ("symbol_errors", "SymbolErrorCounter"),
    ("link_downed", "LinkDownedCounter"),
    ("port_rcv_errors", "PortRcvErrors"),
    ("port_xmit_discards", "PortXmitDiscards"),
    ("port_xmit_wait", "PortXmitWait"),
)


@dataclass
class SwitchLink:
    """One cable between a leaf switch port and a node HCA port."""

    switch_port: int
    node: Node
    hca: HCA
    port: IBPort


@dataclass
class LeafSwitch:
    rail: int
    guid: str
    lid: int
    model: str
    links: list[SwitchLink]

    @property
    def name(self) -> str:
        return f"leaf-{self.rail:02d}"


def ca_part_number(hca: HCA) -> str:
    return _CA_PART_NUMBERS.get(hca.ca_type, hca.ca_type)


def port_guid(port: IBPort) -> str:
    return port.guid


def node_guid(hca: HCA) -> str:
    base = int(hca.ports[0].guid, 16) if hca.ports else 0
    return f"0x{base:016x}"


def port_gid(port: IBPort) -> str:
    raw = f"{int(port.guid, 16):016x}"
    groups = ":".join(raw[i:i + 4] for i in range(0, 16, 4))
    return f"fe80:0000:0000:0000:{groups}"


def rate_label(port: IBPort) -> str:
    return f"{port.rate} Gb/sec (4X {ib_standard_name(port.rate)})"


def switch_model(rate: int) -> str:
    return "Quantum-2 QM9700" if rate >= 400 else "Quantum QM8700"


def fabric_switches(cluster: ClusterConfig) -> list[LeafSwitch]:
    """Leaf switches, one per HCA rail, with their node-facing links."""
    rails: dict[int, list[SwitchLink]] = {}
    for node_index, node in enumerate(cluster.nodes):
        for hca in node.hcas:
            for port in hca.ports:
                rails.setdefault(hca.id, []).append(SwitchLink(node_index + 1, node, hca, port))
    switches = []
    for rail in sorted(rails):
        links = rails[rail]
        switches.append(
            LeafSwitch(
                rail=rail,
                guid=f"0x{SWITCH_GUID_BASE + rail:016x}",
                lid=SWITCH_LID_BASE + rail,
                model=switch_model(links[0].port.rate),
                links=links,
            )
        )
    return switches


def find_port_by_lid(cluster: ClusterConfig, lid: int) -> Optional[tuple[Node, HCA, IBPort]]:
    for node in cluster.nodes:
        for hca in node.hcas:
            for port in hca.ports:
                if port.lid == lid:
                    return node, hca, port
    return None


def find_hca(node: Node, name: str) -> Optional[HCA]:
    for hca in node.hcas:
        if hca.dev_name == name:
            return hca
    return None


def traffic_counters(port: IBPort) -> dict[str, int]:
    """Data and packet counters, fixed per LID so repeated queries agree."""
    rng = np.random.default_rng(port.lid * 7919)
    if port.state != "Active":
        return {"PortXmitData": 0, "PortRcvData": 0, "PortXmitPkts": 0, "PortRcvPkts": 0}
    xmit_pkts, rcv_pkts = (int(v) for v in rng.integers(10_000_000, 90_000_000, size=2))
    return {
        "PortXmitData": xmit_pkts * 1024,
        "PortRcvData": rcv_pkts * 1024,
        "PortXmitPkts": xmit_pkts,
        "PortRcvPkts": rcv_pkts,
    }


def error_counters(port: IBPort) -> dict[str, int]:
    return {label: getattr(port.errors, attr) for attr, label in _ERROR_COUNTERS}


class InfiniBandSimulator:
    """Simulates the infiniband-diags tools against the fabric of the cluster view."""

    METADATA = SimulatorMetadata(
        name="infiniband",
        version="2.1.0",
        description="InfiniBand fabric diagnostics",
        commands=(
            "ibstat",
            "ibstatus",
            "ibportstate",
            "ibporterrors",
            "iblinkinfo",
            "perfquery",
            "ibdiagnet",
            "ibnetdiscover",
            "ibdev2netdev",
            "ibhosts",
            "ibswitches",
        ),
    )

    def __init__(self):
        self._handlers: dict[str, Callable[[ParsedCommand, CommandContext], CommandResult]] = {
            "ibstat": self._ibstat,
            "ibstatus": self._ibstatus,
            "ibportstate": self._ibportstate,
            "ibporterrors": self._ibporterrors,
            "iblinkinfo": self._iblinkinfo,
            "perfquery": self._perfquery,
            "ibdiagnet": self._ibdiagnet,
            "ibnetdiscover": self._ibnetdiscover,
            "ibdev2netdev": self._ibdev2netdev,
            "ibhosts": self._ibhosts,
            "ibswitches": self._ibswitches,
        }

    def describe(self) -> SimulatorMetadata:
        return self.METADATA

    def execute(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        handler = self._handlers.get(parsed.base_command)
        if handler is None:
            return error(f"{parsed.base_command}: not an InfiniBand tool", 127)
        handled = handle_help_version(parsed, context, f"{IB_DIAGS_VERSION}\n")
        if handled is not None:
            return handled
        return handler(parsed, context)

    # per-node tools

    def _local_node(self, context: CommandContext) -> Optional[Node]:
        return resolve_node(context)

    def _ibstat(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        node = self._local_node(context)
        if node is None:
            return error(f"ibstat: node {context.current_node} not found")
        if parsed.has_flag("l", "list_of_cas"):
            return success("".join(f"{hca.dev_name}\n" for hca in node.hcas))
        if parsed.has_flag("s", "short"):
            lines = []
            for hca in node.hcas:
                lines.append(f"CA '{hca.dev_name}'")
                lines.append(f"\tCA type: {ca_part_number(hca)}")
                lines.append(f"\tNumber of ports: {len(hca.ports)}")
                lines.append(f"\tFirmware version: {hca.firmware_version}")
            return success("\n".join(lines) + "\n")

        hcas = node.hcas
        port_filter = None
        if parsed.args:
            hca = find_hca(node, parsed.args[0])
            if hca is None:
                return error(f"ibpanic: [ibstat] main: stat of IB device '{parsed.args[0]}' failed: No such file or directory", 255)
            hcas = [hca]
            if len(parsed.args) > 1:
                port_filter = parse_int(parsed.args[1])
                if port_filter is None or not any(p.port_number == port_filter for p in hca.ports):
                    return error(f"ibpanic: [ibstat] main: port {parsed.args[1]} not found on {hca.dev_name}", 255)

        blocks = []
        for hca in hcas:
            lines = [
                f"CA '{hca.dev_name}'",
                f"\tCA type: {ca_part_number(hca)}",
                f"\tNumber of ports: {len(hca.ports)}",
                f"\tFirmware version: {hca.firmware_version}",
                "\tHardware version: 0",
                f"\tNode GUID: {node_guid(hca)}",
                f"\tSystem image GUID: {node_guid(hca)}",
            ]
            for port in hca.ports:
                if port_filter is not None and port.port_number != port_filter:
                    continue
                lines.extend(
                    [
                        f"\tPort {port.port_number}:",
                        f"\t\tState: {port.state}",
                        f"\t\tPhysical state: {port.physical_state}",
                        f"\t\tRate: {port.rate}",
                        f"\t\tBase lid: {port.lid}",
                        "\t\tLMC: 0",
                        f"\t\tSM lid: {SM_LID}",
                        "\t\tCapability mask: 0xa651e848",
                        f"\t\tPort GUID: {port_guid(port)}",
                        f"\t\tLink layer: {port.link_layer}",
                    ]
                )
            blocks.append("\n".join(lines))
        return success("\n".join(blocks) + "\n")

    def _ibstatus(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        node = self._local_node(context)
        if node is None:
            return error(f"ibstatus: node {context.current_node} not found")
        hcas = node.hcas
        if parsed.args:
            hca = find_hca(node, parsed.args[0])
            if hca is None:
                return error(f"Infiniband device '{parsed.args[0]}' not found", 1)
            hcas = [hca]
        blocks = []
        for hca in hcas:
            for port in hca.ports:
                blocks.append(
                    "\n".join(
                        [
                            f"Infiniband device '{hca.dev_name}' port {port.port_number} status:",
                            f"\tdefault gid:\t {port_gid(port)}",
                            f"\tbase lid:\t 0x{port.lid:x}",
                            f"\tsm lid:\t\t 0x{SM_LID:x}",
                            f"\tstate:\t\t {_LOGICAL_STATES.get(port.state, port.state)}",
                            f"\tphys state:\t {_PHYSICAL_STATES.get(port.physical_state, port.physical_state)}",
                            f"\trate:\t\t {rate_label(port)}",
                            f"\tlink_layer:\t {port.link_layer}",
                        ]
                    )
                )
        return success("\n\n".join(blocks) + "\n")

    def _ibdev2netdev(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        node = self._local_node(context)
        if node is None:
            return error(f"ibdev2netdev: node {context.current_node} not found")
        lines = []
        for hca in node.hcas:
            for port in hca.ports:
                state = "Up" if port.state == "Active" else "Down"
                detail = f" ({hca.pci_address})" if parsed.has_flag("v") else ""
                lines.append(f"{hca.dev_name}{detail} port {port.port_number} ==> ibp{hca.id}s0 ({state})")
        return success("\n".join(lines) + "\n")

    def _ibportstate(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        if len(parsed.args) < 2:
            return usage_error("ibportstate", "usage: ibportstate <dest lid> <portnum> [<op>]")
        lid = parse_int(parsed.args[0])
        port_number = parse_int(parsed.args[1])
        if lid is None or port_number is None:
            return error(f"ibportstate: iberror: invalid destination {parsed.args[0]} {parsed.args[1]}", 1)
        op = parsed.args[2].lower() if len(parsed.args) > 2 else "query"
        found = find_port_by_lid(context.cluster.get_cluster(), lid)
        if found is None or found[2].port_number != port_number:
            return error(f"ibportstate: iberror: failed: smp query portinfo failed (lid {lid} port {port_number})", 1)
        node, hca, port = found

        if op in ("enable", "reset"):
            context.cluster.update_ib_port(
                node.id, hca.id, port.port_number, {"state": "Active", "physical_state": "LinkUp"}, command=parsed.raw
            )
        elif op == "disable":
            context.cluster.update_ib_port(
                node.id, hca.id, port.port_number, {"state": "Down", "physical_state": "Disabled"}, command=parsed.raw
            )
        elif op != "query":
            return usage_error("ibportstate", f"invalid operation '{op}'")
        LOGGER.debug("ibportstate %s on %s/%s port %d", op, node.id, hca.dev_name, port.port_number)

        lines = [
            "CA/RT PortInfo:",
            f"# Port info: Lid {lid} port {port.port_number}",
            f"LinkState:.......................{port.state}",
            f"PhysLinkState:...................{port.physical_state}",
            f"Lid:.............................{port.lid}",
            f"SMLid:...........................{SM_LID}",
            "LinkWidthActive:.................4X",
            f"LinkSpeedActive:.................{ib_standard_name(port.rate)}",
        ]
        return success("\n".join(lines) + "\n")

    # fabric-wide tools

    def _ibporterrors(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        cluster = context.cluster.get_cluster()
        lines = []
        bad_nodes = 0
        checked = 0
        for node in cluster.nodes:
            node_bad = False
            for hca in node.hcas:
                for port in hca.ports:
                    checked += 1
                    counters = {k: v for k, v in error_counters(port).items() if v}
                    if port.state == "Down" and not counters:
                        counters = {"LinkDownedCounter": max(port.errors.link_downed, 1)}
                    if not counters:
                        continue
                    node_bad = True
                    lines.append(f'Errors for {node_guid(hca)} "{node.hostname} {hca.dev_name}"')
                    detail = " ".join(f"[{name} == {value}]" for name, value in counters.items())
                    lines.append(f"   GUID {port_guid(port)} port {port.port_number}: {detail}")
            if node_bad:
                bad_nodes += 1
        if not lines:
            lines.append("No port errors found.")
        lines.append(f"## Summary: {checked} ports checked, {bad_nodes} bad nodes found")
        return success("\n".join(lines) + "\n")

    def _iblinkinfo(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        cluster = context.cluster.get_cluster()
        blocks = []
        for switch in fabric_switches(cluster):
            lines = [f'Switch: {switch.guid} {switch.name} "{switch.model}":']
            for link in switch.links:
                port = link.port
                if port.state == "Active":
                    state = f"==( 4X {port.rate:>7.1f} Gbps {'Active':>8}/{port.physical_state:>9})==>"
                    peer = f'{port.lid:>6} {port.port_number:>4}[  ] "{link.node.hostname} {link.hca.dev_name}" ( )'
                else:
                    state = f"==(              {'Down':>8}/{port.physical_state:>9})==>"
                    peer = '            [  ] "" ( )'
                lines.append(f"{switch.lid:>10} {link.switch_port:>4}[  ] {state} {peer}")
            blocks.append("\n".join(lines))
        if not blocks:
            return error("iblinkinfo: no fabric links discovered", 1)
        return success("\n".join(blocks) + "\n")

    def _perfquery(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        cluster = context.cluster.get_cluster()
        if parsed.args:
            lid = parse_int(parsed.args[0])
            found = find_port_by_lid(cluster, lid) if lid is not None else None
            if found is None:
                return error(f"ibwarn: [perfquery] main: PerfMgt ClassPortInfo query failed (lid {parsed.args[0]})", 1)
        else:
            node = self._local_node(context)
            if node is None or not node.hcas or not node.hcas[0].ports:
                return error("perfquery: no local InfiniBand port", 1)
            found = (node, node.hcas[0], node.hcas[0].ports[0])
        node, hca, port = found

        counters = error_counters(port)
        traffic = traffic_counters(port)
        lines = [
            f"# Port counters: Lid {port.lid} port {port.port_number} (CapMask: 0x5A00)",
            f"PortSelect:......................{port.port_number}",
            "CounterSelect:...................0x1b01",
        ]
        for name, value in {**counters, **traffic}.items():
            if name == "PortXmitWait" and not parsed.has_flag("x", "extended"):
                continue
            lines.append(f"{name + ':':.<33}{value}")
        if parsed.has_flag("r", "reset_after_read"):
            zeroed = {attr: 0 for attr, _ in _ERROR_COUNTERS}
            context.cluster.update_ib_port(node.id, hca.id, port.port_number, {"errors": zeroed}, command=parsed.raw)
        return success("\n".join(lines) + "\n")

    def _ibnetdiscover(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        cluster = context.cluster.get_cluster()
        lines = ["#", "# Topology file: generated by ibnetdiscover", "#"]
        for switch in fabric_switches(cluster):
            lines.append("")
            lines.append(f"vendid=0x2c9\ndevid=0xd2f0\nsysimgguid={switch.guid}")
            lines.append(f'Switch\t40 "S-{switch.guid[2:]}"\t\t# "{switch.model} {switch.name}" enhanced port 0 lid {switch.lid} lmc 0')
            for link in switch.links:
                if link.port.state != "Active":
                    continue
                lines.append(
                    f'[{link.switch_port}]\t"H-{node_guid(link.hca)[2:]}"[{link.port.port_number}]'
                    f'({link.port.guid[2:]}) \t\t# "{link.node.hostname} {link.hca.dev_name}" lid {link.port.lid} 4x{ib_standard_name(link.port.rate)}'
                )
        for node in cluster.nodes:
            for hca in node.hcas:
                lines.append("")
                lines.append(f'Ca\t{len(hca.ports)} "H-{node_guid(hca)[2:]}"\t\t# "{node.hostname} {hca.dev_name}"')
        return success("\n".join(lines) + "\n")

    def _ibhosts(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        cluster = context.cluster.get_cluster()
        lines = [
            f'Ca\t: {node_guid(hca)} ports {len(hca.ports)} "{node.hostname} {hca.dev_name}"'
            for node in cluster.nodes
            for hca in node.hcas
        ]
        return success("\n".join(lines) + "\n")

    def _ibswitches(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        lines = [
            f'Switch\t: {s.guid} ports 40 "{s.model} {s.name}" enhanced port 0 lid {s.lid} lmc 0'
            for s in fabric_switches(context.cluster.get_cluster())
        ]
        return success("\n".join(lines) + "\n")

    def _ibdiagnet(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        cluster = context.cluster.get_cluster()
        switches = fabric_switches(cluster)
        hca_count = sum(len(n.hcas) for n in cluster.nodes)
        warnings = []
        errors = []
        for node in cluster.nodes:
            for hca in node.hcas:
                for port in hca.ports:
                    where = f'"{node.hostname} {hca.dev_name}" port {port.port_number} lid {port.lid}'
                    if port.state != "Active":
                        errors.append(f"-E- Port {where} is {port.state} ({port.physical_state})")
                    for name, value in error_counters(port).items():
                        if value:
                            warnings.append(f"-W- {where}: {name} = {value}")

        lines = [
            "Loading IBDIAGNET from: /usr/lib/x86_64-linux-gnu/ibdiagnet2.1.1",
            "-I- Discovering ... ",
            f"-I- Discovery finished: {len(switches) + hca_count} nodes ({len(switches)} Switches & {hca_count} CA-s) discovered.",
            "",
            "-I- Fabric Discover finished",
            "-I- Lids Check finished",
            "-I- Links Check finished",
        ]
        lines.extend(errors)
        lines.extend(warnings)
        lines.append("")
        lines.append("Summary")
        lines.append("-I- Stage                     Warnings   Errors     Comment")
        lines.append("-I- Discovery                 0          0")
        lines.append(f"-I- Links Check               0          {len(errors)}")
        lines.append(f"-I- Port Counters             {len(warnings):<10} 0")
        lines.append("")
        lines.append("-I- You can find detailed errors/warnings in: /var/tmp/ibdiagnet2/ibdiagnet2.log")
        return CommandResult(output="\n".join(lines) + "\n", exit_code=1 if errors else 0)
