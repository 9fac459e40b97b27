"""Acceptance benchmarks: NCCL tests, HPL and ``gpu-burn``.

Results are deterministic per node (numpy generator seeded from the node id
and tool name) and follow GPU health: a GPU that has fallen off the bus
aborts the run, downed NVLinks scale NCCL bandwidth by the active fraction,
thermal throttling lowers HPL throughput, and ``gpu-burn`` flags GPUs with
uncorrectable ECC errors or a hang.
"""

from __future__ import annotations

import logging
import re
import zlib
from typing import Callable, Optional

import numpy as np

from clustersim.parser import ParsedCommand
from clustersim.simulators.base import (
    BOLD,
    GREEN,
    RED,
    CommandContext,
    CommandResult,
    SimulatorMetadata,
    colorize,
    error,
    handle_help_version,
    parse_int,
    pci_bus_id,
    resolve_node,
    success,
    usage_error,
)
from clustersim.state.hardware import get_hardware_spec
from clustersim.state.models import GPU, Node

LOGGER = logging.getLogger(__name__)

NCCL_TESTS_VERSION = "2.13.8"
NCCL_VERSION = "2.19.3"
HPL_VERSION = "HPL-NVIDIA 23.10.0"

# Peak NCCL bus bandwidth in GB/s at large message sizes, by GPU type
PEAK_BUSBW = {"A100": 230.0, "H100": 480.0, "H200": 480.0, "B200": 900.0}
# Peak FP64 tensor TFLOPS per GPU
PEAK_FP64_TFLOPS = {"A100": 19.5, "H100": 67.0, "H200": 67.0, "B200": 40.0}
THROTTLE_TEMP_C = 85

# bus bandwidth factor per collective, as nccl-tests computes it
_BUS_FACTORS: dict[str, Callable[[int], float]] = {
    "all_reduce": lambda n: 2 * (n - 1) / n,
    "all_gather": lambda n: (n - 1) / n,
    "reduce_scatter": lambda n: (n - 1) / n,
    "alltoall": lambda n: (n - 1) / n,
    "broadcast": lambda n: 1.0,
    "reduce": lambda n: 1.0,
}
_SIZE_RE = re.compile(r"^(\d+)([KMG]?)$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "K": 1024, "M": 1024 ** 2, "G": 1024 ** 3}
_HALF_BANDWIDTH_BYTES = 8 * 1024 ** 2


def parse_size(value: Optional[str], default: int) -> Optional[int]:
    """``8``, ``128M``, ``1G`` to bytes."""
    if value is None:
        return default
    match = _SIZE_RE.match(value)
    if not match:
        return None
    return int(match.group(1)) * _SIZE_UNITS[match.group(2).upper()]


def benchmark_rng(node: Node, tool: str) -> np.random.Generator:
    return np.random.default_rng(zlib.crc32(f"{node.id}:{tool}".encode()))


def lost_gpus(gpus: list[GPU]) -> list[GPU]:
    return [g for g in gpus if g.has_fatal_xid]


def nvlink_fraction(gpus: list[GPU]) -> float:
    total = sum(len(g.nvlinks) for g in gpus)
    if total == 0:
        return 1.0
    return sum(1 for g in gpus for link in g.nvlinks if link.status == "Active") / total


def burn_faults(gpu: GPU) -> int:
    """Error count ``gpu-burn`` reports for a GPU; zero when healthy."""
    if gpu.has_fatal_xid or gpu.health_status == "Critical":
        return max(1, gpu.ecc_errors.double_bit) * 1000
    return gpu.ecc_errors.double_bit


class BenchmarkSimulator:
    """Simulates NCCL, HPL and GPU burn-in benchmarks on the current node."""

    METADATA = SimulatorMetadata(
        name="benchmarks",
        version=NCCL_TESTS_VERSION,
        description="NCCL tests, HPL and gpu-burn",
        commands=("nccl-test", "all_reduce_perf", "hpl", "gpu-burn"),
        value_flags=(
            "minbytes",
            "maxbytes",
            "stepfactor",
            "ngpus",
            "operation",
            "op",
            "iterations",
            "problem-size",
            "doubles",
        ),
    )

    def __init__(self):
        self._handlers: dict[str, Callable[[ParsedCommand, CommandContext, Node], CommandResult]] = {
            "nccl-test": self._nccl_test,
            "all_reduce_perf": self._all_reduce_perf,
            "hpl": self._hpl,
            "gpu-burn": self._gpu_burn,
        }

    def describe(self) -> SimulatorMetadata:
        return self.METADATA

    def execute(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        handler = self._handlers.get(parsed.base_command)
        if handler is None:
            return error(f"{parsed.base_command}: command not found", 127)
        banner = HPL_VERSION if parsed.base_command == "hpl" else f"nccl-tests {NCCL_TESTS_VERSION} (NCCL {NCCL_VERSION})"
        handled = handle_help_version(parsed, context, banner + "\n", short_help=True, short_version=False)
        if handled is not None:
            return handled
        node = resolve_node(context)
        if node is None:
            return error(f"{parsed.base_command}: node {context.current_node} not found")
        return handler(parsed, context, node)

    def _nccl_header(self, node: Node, gpus: list[GPU], op: str, min_bytes: int, max_bytes: int, factor: int) -> list[str]:
        lines = [
            f"# nccl-tests version {NCCL_TESTS_VERSION} nccl-headers={NCCL_VERSION.replace('.', '')}0 nccl-library={NCCL_VERSION.replace('.', '')}0",
            f"# Collective test starting: {op}_perf",
            f"# nThread 1 nGpus {len(gpus)} minBytes {min_bytes} maxBytes {max_bytes} step: {factor}(factor) warmup iters: 5 iters: 20 agg iters: 1 validation: 1 graph: 0",
            "#",
            "# Using devices",
        ]
        lines.extend(
            f"#  Rank {rank:2d} Group  0 Pid  {4100 + rank:5d} on {node.hostname:>8} device {rank:2d} [{pci_bus_id(g)[5:].lower()}] {g.name}"
            for rank, g in enumerate(gpus)
        )
        return lines

    def _run_collective(
        self, node: Node, gpus: list[GPU], op: str, min_bytes: int, max_bytes: int, factor: int
    ) -> CommandResult:
        lost = lost_gpus(gpus)
        lines = self._nccl_header(node, gpus, op, min_bytes, max_bytes, factor)
        if lost:
            bus = pci_bus_id(lost[0])
            lines.append(f"{node.hostname}: Test NCCL failure common.cu:958 'unhandled cuda error' / 'GPU at PCI:{bus} has fallen off the bus'")
            lines.append(f" .. {node.hostname} pid 4100: Test failure common.cu:1100")
            return CommandResult(output="\n".join(lines) + "\n", exit_code=1)

        spec = get_hardware_spec(node.system_type)
        peak = PEAK_BUSBW.get(spec.gpu_type, 230.0) * nvlink_fraction(gpus)
        bus_factor = _BUS_FACTORS[op](len(gpus))
        rng = benchmark_rng(node, op)
        lines.append("#")
        lines.append(f"# {'size':>10} {'count':>12} {'type':>8} {'time':>8} {'algbw':>7} {'busbw':>7} {'#wrong':>7}")
        lines.append(f"# {'(B)':>10} {'(elements)':>12} {'':>8} {'(us)':>8} {'(GB/s)':>7} {'(GB/s)':>7} {'':>7}")
        busbws = []
        size = min_bytes
        while size <= max_bytes:
            efficiency = size / (size + _HALF_BANDWIDTH_BYTES)
            busbw = peak * efficiency * float(rng.uniform(0.97, 1.0)) if bus_factor else 0.0
            algbw = busbw / bus_factor if bus_factor else peak * efficiency
            time_us = size / (algbw * 1e3) if algbw else 0.0
            busbws.append(busbw)
            lines.append(f"  {size:>10} {max(size // 4, 1):>12} {'float':>8} {time_us:>8.1f} {algbw:>7.2f} {busbw:>7.2f} {0:>7}")
            size *= factor
        lines.append("# Out of bounds values : 0 OK")
        lines.append(f"# Avg bus bandwidth    : {float(np.mean(busbws)) if busbws else 0.0:.4f}")
        lines.append("#")
        return success("\n".join(lines) + "\n")

    def _all_reduce_perf(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        min_bytes = parse_size(parsed.get_flag_str("b", "minbytes"), 33554432)
        max_bytes = parse_size(parsed.get_flag_str("e", "maxbytes"), 33554432)
        factor = parse_int(parsed.get_flag_str("f", "stepfactor", default="2"))
        ngpus = parse_int(parsed.get_flag_str("g", "ngpus", default="1"))
        if min_bytes is None or max_bytes is None or not factor or factor < 2 or max_bytes < min_bytes:
            return usage_error("all_reduce_perf", "invalid size range or step factor", 1)
        if not ngpus or ngpus > len(node.gpus):
            return error(f"Error: requested {parsed.get_flag_str('g', 'ngpus')} GPUs but only {len(node.gpus)} available", 1)
        return self._run_collective(node, node.gpus[:ngpus], "all_reduce", min_bytes, max_bytes, factor)

    def _nccl_test(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        op = (parsed.get_flag_str("operation", "op", default="all_reduce") or "all_reduce").replace("-", "_")
        if op not in _BUS_FACTORS:
            return usage_error("nccl-test", f"unknown operation '{op}' (choose from {', '.join(_BUS_FACTORS)})", 1)
        if parsed.has_flag("burn-in", "burnin"):
            return self._nccl_burn_in(parsed, node)
        return self._run_collective(node, node.gpus, op, 8, 128 * 1024 ** 2, 2)

    def _iterations(self, parsed: ParsedCommand, default: int) -> Optional[int]:
        value = parsed.get_flag_str("iterations", "n")
        return default if value is None else parse_int(value)

    def _nccl_burn_in(self, parsed: ParsedCommand, node: Node) -> CommandResult:
        iterations = self._iterations(parsed, 1000)
        if not iterations:
            return usage_error("nccl-test", "--iterations must be a positive integer", 1)
        lines = [colorize("NCCL Burn-in Test", BOLD), f"Node: {node.hostname}", f"GPUs: {len(node.gpus)}", f"Iterations: {iterations}", ""]
        lost = lost_gpus(node.gpus)
        if lost:
            lines.append(f"Iteration 1/{iterations}: NCCL error: GPU {lost[0].id} has fallen off the bus")
            lines.append(f"Burn-in Status: {colorize('FAILED', RED)}")
            return CommandResult(output="\n".join(lines) + "\n", exit_code=1)
        spec = get_hardware_spec(node.system_type)
        peak = PEAK_BUSBW.get(spec.gpu_type, 230.0) * nvlink_fraction(node.gpus)
        samples = benchmark_rng(node, "nccl-burn-in").uniform(0.93, 0.99, size=iterations) * peak
        lines.append("Running NCCL AllReduce burn-in...")
        shown = min(iterations, 10)
        lines.extend(f"  Iteration {i + 1}/{iterations}: {samples[i]:.2f} GB/s" for i in range(shown))
        if iterations > shown:
            lines.append(f"  ... ({iterations - shown} more iterations)")
        degraded = nvlink_fraction(node.gpus) < 1.0
        lines.extend(
            [
                "",
                "Burn-in Results:",
                f"  Average Bandwidth: {samples.mean():.2f} GB/s",
                f"  Min Bandwidth: {samples.min():.2f} GB/s",
                f"  Max Bandwidth: {samples.max():.2f} GB/s",
                "  Failures: 0",
                f"Burn-in Status: {colorize('DEGRADED', RED) if degraded else colorize('PASSED', GREEN)}",
            ]
        )
        return CommandResult(output="\n".join(lines) + "\n", exit_code=1 if degraded else 0)

    def _hpl(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        problem = parse_int(parsed.get_flag_str("N", "problem-size", default="90000"))
        if not problem:
            return usage_error("hpl", "problem size must be a positive integer", 1)
        spec = get_hardware_spec(node.system_type)
        gpus = node.gpus
        lost = lost_gpus(gpus)
        lines = [
            "=" * 78,
            f"{HPL_VERSION}  -- NVIDIA accelerated HPL benchmark -- NVIDIA",
            "=" * 78,
            "",
            "Configuration:",
            f"  Problem Size (N): {problem}",
            "  Block Size (NB): 1024",
            f"  Process Grid: 2 x {max(len(gpus) // 2, 1)}",
            f"  GPUs: {len(gpus)} x {spec.gpu_model}",
            "",
        ]
        if lost:
            lines.append(f"HPL ERROR: CUDA error on GPU {lost[0].id}: unspecified launch failure (GPU has fallen off the bus)")
            return CommandResult(output="\n".join(lines) + "\n", exit_code=1)

        throttled = [g for g in gpus if g.temperature >= THROTTLE_TEMP_C]
        per_gpu = PEAK_FP64_TFLOPS.get(spec.gpu_type, 19.5) * 1e3 * 0.82
        peak = per_gpu * (len(gpus) - 0.35 * len(throttled))
        rng = benchmark_rng(node, "hpl")
        if parsed.has_flag("burn-in", "burnin"):
            iterations = self._iterations(parsed, 100)
            if not iterations:
                return usage_error("hpl", "--iterations must be a positive integer", 1)
            samples = peak * rng.uniform(0.96, 1.0, size=iterations)
            lines.insert(0, colorize("HPL Burn-in Test", BOLD))
            lines.append(f"Iterations: {iterations}")
            shown = min(iterations, 5)
            lines.extend(f"  Iteration {i + 1}/{iterations}: {samples[i]:.1f} GFLOPS" for i in range(shown))
            if iterations > shown:
                lines.append(f"  ... ({iterations - shown} more iterations)")
            status = "WARNING" if throttled else "PASSED"
            lines.extend(
                [
                    "",
                    "Burn-in Results:",
                    f"  Status: {status}",
                    f"  Average Performance: {samples.mean():.1f} GFLOPS",
                    f"  Min Performance: {samples.min():.1f} GFLOPS",
                    f"  Max Performance: {samples.max():.1f} GFLOPS",
                    f"  Std Deviation: {samples.std():.1f} GFLOPS",
                    "  Failures: 0",
                ]
            )
            return CommandResult(output="\n".join(lines) + "\n", exit_code=1 if throttled else 0)

        gflops = peak * float(rng.uniform(0.96, 1.0))
        seconds = (2.0 / 3.0) * problem ** 3 / (gflops * 1e9)
        residual = float(rng.uniform(0.0002, 0.004))
        lines.extend(
            [
                "RESULTS",
                "-" * 78,
                f"{'T/V':<12}{'N':>8}{'NB':>6}{'P':>4}{'Q':>4}{'Time':>12}{'Gflops':>16}",
                f"{'WR03L2R8':<12}{problem:>8}{1024:>6}{2:>4}{max(len(gpus) // 2, 1):>4}{seconds:>12.2f}{gflops:>16.4e}",
                "-" * 78,
                f"||Ax-b||_oo/(eps*(||A||_oo*||x||_oo+||b||_oo)*N)= {residual:.7f} ...... PASSED",
            ]
        )
        if throttled:
            ids = ", ".join(str(g.id) for g in throttled)
            lines.append(f"WARNING: GPU(s) {ids} thermally throttled during the run; performance below expected")
        return CommandResult(output="\n".join(lines) + "\n", exit_code=0)

    def _gpu_burn(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        # "gpu-burn -d 60": the duration arrives as the value of -d
        value = parsed.args[0] if parsed.args else parsed.get_flag_str("d", "doubles")
        duration = parse_int(value) if value is not None else 10
        if not duration:
            return usage_error("gpu-burn", "duration must be a positive number of seconds", 1)
        lines = [colorize("GPU Burn - GPU Stress Test", BOLD), f"Burning for {duration} seconds."]
        lines.extend(f"GPU {g.id}: {g.name} ({g.uuid})" for g in node.gpus)
        lines.append(f"Testing {'double' if parsed.has_flag('d', 'doubles') else 'single'} precision")
        rng = benchmark_rng(node, "gpu-burn")
        gflops = [f"{float(rng.uniform(18000, 19500)) if burn_faults(g) == 0 else 0.0:.0f} Gflop/s" for g in node.gpus]
        lines.append(f"100.0%  proc'd: {' - '.join(gflops)}   errors: {' - '.join(str(burn_faults(g)) for g in node.gpus)}")
        lines.append("Tested %d GPUs:" % len(node.gpus))
        faulty = []
        for gpu in node.gpus:
            errors = burn_faults(gpu)
            if errors:
                faulty.append(gpu.id)
            lines.append(f"\tGPU {gpu.id}: {colorize('FAULTY', RED) if errors else colorize('OK', GREEN)}")
        LOGGER.debug("gpu-burn on %s: faulty=%s", node.id, faulty)
        return CommandResult(output="\n".join(lines) + "\n", exit_code=1 if faulty else 0)
