"""
Metrics facility.

`Metrics` is the single context object for the telemetry subsystem. Build
one at process startup and hand it to whatever needs it (HTTP surface, model
reporters); nothing in this package looks it up implicitly.

It owns:
  - the Prometheus registry and the request-level counter families;
  - the generic metrics-enabled flag;
  - one-time GPU discovery and the GPU sampler it may start.

Nothing here raises to the caller on GPU/driver problems. Those are logged
and result in GPU metrics being partially or wholly unavailable.
"""

from __future__ import annotations

import logging
import threading
from typing import List, Optional

from prometheus_client import CollectorRegistry, start_http_server

from .config import Settings, cpu_only_requested
from .devices import GpuDevice, discover_devices
from .registry import RequestFamilies, build_request_families, exposition
from .sampler import GpuMetricsSampler, SamplerState
from .telemetry_gpu import DeviceBackend, default_backend

logger = logging.getLogger(__name__)

_NO_BACKEND = object()


class Metrics:
    """
    Process telemetry facility.

    Typical use:

        metrics = Metrics(load_settings())
        metrics.enable_metrics()
        metrics.enable_gpu_metrics()
        ...
        text = metrics.serialized_metrics()
        ...
        metrics.shutdown()

    `backend` defaults to NVML when pynvml is importable. Passing
    `backend=None` explicitly models a host without a usable GPU driver.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        registry: Optional[CollectorRegistry] = None,
        backend: object = _NO_BACKEND,
    ) -> None:
        self._settings = settings or Settings()
        self._registry = registry if registry is not None else CollectorRegistry()
        self._backend: Optional[DeviceBackend] = (
            default_backend() if backend is _NO_BACKEND else backend  # type: ignore[assignment]
        )
        self._families = build_request_families(self._registry)

        self._metrics_enabled = False
        self._gpu_metrics_enabled = False
        self._gpu_lock = threading.Lock()
        self._devices: List[GpuDevice] = []
        self._sampler: Optional[GpuMetricsSampler] = None

        self._server_lock = threading.Lock()
        self._server_started = False

    # ------------------------------------------------------------------ #
    # Accessors
    # ------------------------------------------------------------------ #

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    @property
    def families(self) -> RequestFamilies:
        return self._families

    @property
    def enabled(self) -> bool:
        return self._metrics_enabled

    @property
    def gpu_metrics_enabled(self) -> bool:
        return self._gpu_metrics_enabled

    @property
    def devices(self) -> List[GpuDevice]:
        return list(self._devices)

    @property
    def sampler(self) -> Optional[GpuMetricsSampler]:
        return self._sampler

    # ------------------------------------------------------------------ #
    # Enable / shutdown
    # ------------------------------------------------------------------ #

    def enable_metrics(self) -> None:
        self._metrics_enabled = True

    def enable_gpu_metrics(self) -> None:
        """
        Discover GPUs and start the sampler, once.

        Concurrent and repeated callers are serialized on a lock; only the
        first performs discovery. GPU metrics count as enabled afterwards
        even when discovery was skipped or found nothing.
        """
        with self._gpu_lock:
            if self._gpu_metrics_enabled:
                return

            if self._settings.cpu_only or cpu_only_requested():
                logger.info("CPU-only mode requested, GPU metrics will not be available")
            else:
                self._initialize_gpu_metrics()

            self._gpu_metrics_enabled = True

    def _initialize_gpu_metrics(self) -> bool:
        backend = self._backend
        if backend is None:
            logger.warning("no GPU backend available, GPU metrics will not be available")
            return False

        try:
            backend.init()
        except Exception as e:
            logger.warning("failed to initialize, GPU metrics will not be available: %s", e)
            return False

        try:
            count = backend.device_count()
        except Exception as e:
            logger.warning("failed to get device count, GPU metrics will not be available: %s", e)
            return False

        entries = discover_devices(backend, count, self._registry)
        self._devices = [e.device for e in entries]
        if entries:
            self._sampler = GpuMetricsSampler(
                backend,
                entries,
                interval_s=self._settings.sample_interval_s,
                fail_threshold=self._settings.fail_threshold,
            )
            self._sampler.start()
        else:
            logger.info("no usable GPUs found, GPU metrics sampler not started")
        return True

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """
        Stop the GPU sampler if it is running and wait for it to exit.

        Waits for an in-progress enable_gpu_metrics() so a sampler it starts
        is stopped too.
        """
        with self._gpu_lock:
            sampler = self._sampler
            if sampler is None:
                return
            if sampler.state in (SamplerState.RUNNING, SamplerState.STOPPING):
                sampler.stop(timeout=timeout)

    # ------------------------------------------------------------------ #
    # Lookups / exposition
    # ------------------------------------------------------------------ #

    def uuid_for_cuda_device(self, cuda_device: int) -> Optional[str]:
        """
        Return the telemetry UUID for a compute-runtime device ordinal.

        Returns None silently when GPU metrics are not enabled or no backend
        exists, and None with an error log when the lookup itself fails.
        """
        if not self._gpu_metrics_enabled or self._backend is None:
            return None
        try:
            handle = self._backend.handle_for_cuda_device(cuda_device)
        except Exception as e:
            logger.error("failed to get device handle for CUDA device %d: %s", cuda_device, e)
            return None
        try:
            return self._backend.uuid(handle)
        except Exception as e:
            logger.error("failed to get device UUID for CUDA device %d: %s", cuda_device, e)
            return None

    def serialized_metrics(self) -> str:
        return exposition(self._registry)

    def ensure_server(self, port: Optional[int] = None) -> bool:
        """
        Start a standalone Prometheus HTTP server for this registry, once.

        Returns True if a server is (now) running, False if it could not be
        started.
        """
        if self._server_started:
            return True
        with self._server_lock:
            if self._server_started:
                return True
            p = self._settings.metrics_port if port is None else int(port)
            try:
                start_http_server(p, registry=self._registry)
            except Exception as e:
                logger.error("Failed to start Prometheus standalone server on port %d: %s", p, e)
                return False
            self._server_started = True
            logger.info("Prometheus standalone server started on port %d", p)
            return True
