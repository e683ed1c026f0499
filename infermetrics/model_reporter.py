"""
Per-model request counters.

A ModelMetricsReporter binds the request-level counter families to one
(model, version, gpu_uuid) label set and exposes plain increment-on-event
helpers for the request path.
"""

from __future__ import annotations

from typing import Optional

from prometheus_client import Counter

from .metrics import Metrics


class ModelMetricsReporter:
    def __init__(self, metrics: Metrics, model_name: str, model_version: int, gpu_uuid: str = "") -> None:
        self.model_name = model_name
        self.model_version = int(model_version)
        self.gpu_uuid = gpu_uuid

        labels = {
            "model": model_name,
            "version": str(self.model_version),
            "gpu_uuid": gpu_uuid,
        }
        f = metrics.families
        self._success: Counter = f.inf_success.labels(**labels)
        self._failure: Counter = f.inf_failure.labels(**labels)
        self._count: Counter = f.inf_count.labels(**labels)
        self._exec_count: Counter = f.inf_exec_count.labels(**labels)
        self._request_duration_us: Counter = f.inf_request_duration_us.labels(**labels)
        self._queue_duration_us: Counter = f.inf_queue_duration_us.labels(**labels)
        self._compute_input_duration_us: Counter = f.inf_compute_input_duration_us.labels(**labels)
        self._compute_infer_duration_us: Counter = f.inf_compute_infer_duration_us.labels(**labels)
        self._compute_output_duration_us: Counter = f.inf_compute_output_duration_us.labels(**labels)

    @classmethod
    def create(
        cls,
        metrics: Metrics,
        model_name: str,
        model_version: int,
        device: int = -1,
    ) -> Optional["ModelMetricsReporter"]:
        """
        Build a reporter, or return None when metrics are disabled.

        `device` is the compute-runtime ordinal the model instance runs on;
        negative means CPU. The gpu_uuid label is left empty when the UUID
        cannot be resolved.
        """
        if not metrics.enabled:
            return None
        gpu_uuid = ""
        if device >= 0:
            gpu_uuid = metrics.uuid_for_cuda_device(device) or ""
        return cls(metrics, model_name, model_version, gpu_uuid)

    def record_success(
        self,
        batch_size: int,
        *,
        request_duration_us: float = 0.0,
        queue_duration_us: float = 0.0,
        compute_input_duration_us: float = 0.0,
        compute_infer_duration_us: float = 0.0,
        compute_output_duration_us: float = 0.0,
    ) -> None:
        self._success.inc()
        self._count.inc(max(0, int(batch_size)))
        self._request_duration_us.inc(max(0.0, request_duration_us))
        self._queue_duration_us.inc(max(0.0, queue_duration_us))
        self._compute_input_duration_us.inc(max(0.0, compute_input_duration_us))
        self._compute_infer_duration_us.inc(max(0.0, compute_infer_duration_us))
        self._compute_output_duration_us.inc(max(0.0, compute_output_duration_us))

    def record_failure(self) -> None:
        self._failure.inc()

    def record_execution(self, count: int = 1) -> None:
        """One model execution can serve several batched requests."""
        self._exec_count.inc(max(0, int(count)))
