"""
Metric families for the inference server.

Family names and help strings are an external contract with existing
scrapers and dashboards; keep them byte-for-byte stable.

Two groups are built here:
  - request-level counters, labelled by (model, version, gpu_uuid), which
    are registered as soon as the facility is constructed;
  - GPU families, labelled by gpu_uuid, which are only registered once
    discovery finds at least one usable device.
"""

from __future__ import annotations

import dataclasses
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    generate_latest,
)

__all__ = [
    "GPU_UUID_LABEL",
    "MODEL_LABELS",
    "RequestFamilies",
    "GpuFamilies",
    "GpuMetricHandles",
    "build_request_families",
    "build_gpu_families",
    "exposition",
]

GPU_UUID_LABEL = "gpu_uuid"
MODEL_LABELS = ("model", "version", GPU_UUID_LABEL)


@dataclasses.dataclass(frozen=True)
class RequestFamilies:
    inf_success: Counter
    inf_failure: Counter
    inf_count: Counter
    inf_exec_count: Counter
    inf_request_duration_us: Counter
    inf_queue_duration_us: Counter
    inf_compute_input_duration_us: Counter
    inf_compute_infer_duration_us: Counter
    inf_compute_output_duration_us: Counter


@dataclasses.dataclass(frozen=True)
class GpuFamilies:
    utilization: Gauge
    memory_total: Gauge
    memory_used: Gauge
    power_usage: Gauge
    power_limit: Gauge
    energy_consumption: Counter

    def handles_for(self, uuid: str) -> "GpuMetricHandles":
        """Create (or fetch) the per-device children for one GPU UUID."""
        labels = {GPU_UUID_LABEL: uuid}
        return GpuMetricHandles(
            utilization=self.utilization.labels(**labels),
            memory_total=self.memory_total.labels(**labels),
            memory_used=self.memory_used.labels(**labels),
            power_usage=self.power_usage.labels(**labels),
            power_limit=self.power_limit.labels(**labels),
            energy_consumption=self.energy_consumption.labels(**labels),
        )


@dataclasses.dataclass(frozen=True)
class GpuMetricHandles:
    """
    Children of the GPU families for a single device.

    The registry owns these; holders only keep a reference for updates.
    """

    utilization: Gauge
    memory_total: Gauge
    memory_used: Gauge
    power_usage: Gauge
    power_limit: Gauge
    energy_consumption: Counter


def build_request_families(registry: Optional[CollectorRegistry] = None) -> RequestFamilies:
    reg = registry or REGISTRY
    return RequestFamilies(
        inf_success=Counter(
            "nv_inference_request_success",
            "Number of successful inference requests, all batch sizes",
            MODEL_LABELS,
            registry=reg,
        ),
        inf_failure=Counter(
            "nv_inference_request_failure",
            "Number of failed inference requests, all batch sizes",
            MODEL_LABELS,
            registry=reg,
        ),
        inf_count=Counter(
            "nv_inference_count",
            "Number of inferences performed",
            MODEL_LABELS,
            registry=reg,
        ),
        inf_exec_count=Counter(
            "nv_inference_exec_count",
            "Number of model executions performed",
            MODEL_LABELS,
            registry=reg,
        ),
        inf_request_duration_us=Counter(
            "nv_inference_request_duration_us",
            "Cummulative inference request duration in microseconds",
            MODEL_LABELS,
            registry=reg,
        ),
        inf_queue_duration_us=Counter(
            "nv_inference_queue_duration_us",
            "Cummulative inference queuing duration in microseconds",
            MODEL_LABELS,
            registry=reg,
        ),
        inf_compute_input_duration_us=Counter(
            "nv_inference_compute_input_duration_us",
            "Cummulative compute input duration in microseconds",
            MODEL_LABELS,
            registry=reg,
        ),
        inf_compute_infer_duration_us=Counter(
            "nv_inference_compute_infer_duration_us",
            "Cummulative compute inference duration in microseconds",
            MODEL_LABELS,
            registry=reg,
        ),
        inf_compute_output_duration_us=Counter(
            "nv_inference_compute_output_duration_us",
            "Cummulative inference compute output duration in microseconds",
            MODEL_LABELS,
            registry=reg,
        ),
    )


def build_gpu_families(registry: Optional[CollectorRegistry] = None) -> GpuFamilies:
    reg = registry or REGISTRY
    labels = (GPU_UUID_LABEL,)
    return GpuFamilies(
        utilization=Gauge(
            "nv_gpu_utilization",
            "GPU utilization rate [0.0 - 1.0)",
            labels,
            registry=reg,
        ),
        memory_total=Gauge(
            "nv_gpu_memory_total_bytes",
            "GPU total memory, in bytes",
            labels,
            registry=reg,
        ),
        memory_used=Gauge(
            "nv_gpu_memory_used_bytes",
            "GPU used memory, in bytes",
            labels,
            registry=reg,
        ),
        power_usage=Gauge(
            "nv_gpu_power_usage",
            "GPU power usage in watts",
            labels,
            registry=reg,
        ),
        power_limit=Gauge(
            "nv_gpu_power_limit",
            "GPU power management limit in watts",
            labels,
            registry=reg,
        ),
        energy_consumption=Counter(
            "nv_energy_consumption",
            "GPU energy consumption in joules since the Triton Server started",
            labels,
            registry=reg,
        ),
    )


def exposition(registry: Optional[CollectorRegistry] = None) -> str:
    """Render the registry in the Prometheus text format."""
    return generate_latest(registry or REGISTRY).decode("utf-8")
