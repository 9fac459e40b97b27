"""Telemetry simulation for GPUs.

The MetricsSimulator moves GPU telemetry the way real hardware behaves:

- Utilization stays high and steady under an allocated job and near zero when idle
- Power follows utilization with a 15% TDP idle floor
- Temperature follows power draw with thermal inertia
- SM clocks throttle above 70C

All randomness comes from a seeded numpy Generator, and ``dmon_samples``
derives its own generator from the GPU uuid, so tool output built from it is
reproducible across fresh clusters.
"""

from __future__ import annotations

import zlib
from typing import Any, Dict, List, Optional

import numpy as np

from clustersim.state.hardware import HARDWARE_SPECS
from clustersim.state.models import GPU

WORKLOAD_UTILIZATION = {
    "idle": 5.0,
    "inference": 60.0,
    "training": 95.0,
    "stress": 100.0,
}


def boost_clock_for(gpu_name: str) -> int:
    for spec in HARDWARE_SPECS.values():
        if spec.gpu_model == gpu_name:
            return spec.boost_clock_mhz
    return 1410


class MetricsSimulator:
    """Drives GPU telemetry through a cluster view.

    Attributes:
        config: Generation parameters, DEFAULT_CONFIG merged with overrides
    """

    DEFAULT_CONFIG = {
        "seed": 42,
        "ambient_temp_c": 32.0,
        "temp_range_c": 48.0,
        "idle_power_fraction": 0.15,
        "power_smoothing": 0.15,
        "thermal_inertia": 0.1,
        "throttle_temp_c": 70.0,
        "throttle_mhz_per_c": 10.0,
        "utilization_noise": 1.0,
    }

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = {**self.DEFAULT_CONFIG, **(config or {})}
        self._rng = np.random.default_rng(self.config["seed"])

    def next_gpu_state(self, gpu: GPU) -> Dict[str, Any]:
        """Compute one tick of telemetry for ``gpu`` without mutating it."""
        cfg = self.config
        active = gpu.allocated_job_id is not None
        if active:
            noise = self._rng.uniform(-0.5, 0.5) * cfg["utilization_noise"]
            utilization = float(np.clip(gpu.utilization + noise, 5.0, 100.0))
            memory_used = float(np.clip(gpu.memory_used + self._rng.uniform(-10, 10), 0, gpu.memory_total))
        else:
            utilization = float(self._rng.uniform(0.0, 2.0))
            memory_used = float(self._rng.uniform(50, 200))

        idle_power = gpu.power_limit * cfg["idle_power_fraction"]
        target_power = idle_power + utilization / 100.0 * (gpu.power_limit - idle_power)
        power = gpu.power_draw + (target_power - gpu.power_draw) * cfg["power_smoothing"]
        power = float(np.clip(power, idle_power * 0.8, gpu.power_limit))

        target_temp = cfg["ambient_temp_c"] + power / gpu.power_limit * cfg["temp_range_c"]
        temperature = gpu.temperature + (target_temp - gpu.temperature) * cfg["thermal_inertia"]

        throttle = max(temperature - cfg["throttle_temp_c"], 0.0) * cfg["throttle_mhz_per_c"]
        clocks_sm = int(round(max(300.0, boost_clock_for(gpu.name) - throttle)))

        return {
            "utilization": round(utilization, 1),
            "memory_used": int(round(memory_used)),
            "power_draw": round(power, 1),
            "temperature": round(temperature, 1),
            "clocks_sm": clocks_sm,
        }

    def tick(self, view) -> int:
        """Advance every healthy GPU by one sample through ``view.update_gpu``.

        GPUs that have fallen off the bus or hang keep their faulted telemetry.

        Returns:
            Number of GPUs updated
        """
        updated = 0
        for node in view.get_cluster().nodes:
            for gpu in node.gpus:
                if gpu.has_fatal_xid or gpu.health_status == "Critical":
                    continue
                if view.update_gpu(node.id, gpu.id, self.next_gpu_state(gpu), command="metrics-tick"):
                    updated += 1
        return updated

    def simulate_workload(self, view, node_id: str, pattern: str) -> bool:
        """Apply a workload pattern (idle, inference, training, stress) to every GPU on a node."""
        if pattern not in WORKLOAD_UTILIZATION:
            return False
        node = view.get_node(node_id)
        if node is None:
            return False
        target = WORKLOAD_UTILIZATION[pattern]
        memory_fraction = {"idle": 0.01, "training": 0.9}.get(pattern, 0.6)
        for gpu in node.gpus:
            utilization = target + float(self._rng.uniform(-5.0, 5.0))
            idle_power = gpu.power_limit * self.config["idle_power_fraction"]
            power = idle_power + min(utilization, 100.0) / 100.0 * (gpu.power_limit - idle_power)
            view.update_gpu(
                node_id,
                gpu.id,
                {
                    "utilization": round(utilization, 1),
                    "memory_used": int(gpu.memory_total * memory_fraction),
                    "power_draw": round(power, 1),
                    "temperature": round(
                        self.config["ambient_temp_c"] + power / gpu.power_limit * self.config["temp_range_c"], 1
                    ),
                },
                command=f"workload:{pattern}",
            )
        return True


def dmon_samples(gpu: GPU, count: int) -> List[Dict[str, float]]:
    """Deterministic dmon rows around the GPU's current telemetry.

    Args:
        gpu: GPU to sample
        count: Number of rows

    Returns:
        One dict per sample with pwr, gtemp, mtemp, sm, mem, mclk, pclk keys
    """
    rng = np.random.default_rng(zlib.crc32(gpu.uuid.encode("utf-8")))
    jitter = rng.normal(0.0, 1.0, size=(max(count, 0), 3))
    samples = []
    for row in jitter:
        samples.append(
            {
                "pwr": int(round(max(gpu.power_draw + row[0] * 2.0, 0.0))),
                "gtemp": int(round(gpu.temperature)),
                "mtemp": int(round(gpu.temperature + 4)),
                "sm": int(np.clip(round(gpu.utilization + row[1]), 0, 100)),
                "mem": int(np.clip(round(gpu.memory_used / gpu.memory_total * 100 + row[2]), 0, 100)),
                "mclk": gpu.clocks_mem,
                "pclk": gpu.clocks_sm,
            }
        )
    return samples
