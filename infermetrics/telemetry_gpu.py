# FILE: infermetrics/telemetry_gpu.py
"""
GPU query backend.

This module is the only place that talks to the GPU driver. It exposes a
small abstract interface (DeviceBackend) with one method per hardware query
the metrics subsystem needs, plus an NVML implementation built on pynvml.

Contract for implementations:
  - every query either returns a raw value in driver units or raises;
  - no retries, caching, timeouts or unit conversion happen here. Failure
    accounting and conversion live in the sampler.

Units returned by the query methods:
  - power_limit / power_usage: milliwatts
  - total_energy:              millijoules since driver load (cumulative)
  - utilization:               integer percent (0-100)
  - memory:                    (total_bytes, used_bytes)
"""

from __future__ import annotations

import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Any, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Optional NVML import (for NVIDIA GPUs).
try:
    import pynvml  # type: ignore[import]

    _NVML_AVAILABLE = True
except Exception:  # pragma: no cover - import failure path
    pynvml = None  # type: ignore[assignment]
    _NVML_AVAILABLE = False
    logger.info(
        "pynvml not available; GPU metrics will be disabled. "
        "Install 'nvidia-ml-py' to enable NVIDIA GPU telemetry."
    )


def nvml_available() -> bool:
    return _NVML_AVAILABLE


def _to_str(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


# ------------------------------
# Abstract base
# ------------------------------

class DeviceBackend(ABC):
    """
    Abstract GPU query interface.

    Handles are opaque to callers; they are only ever passed back into the
    same backend.
    """

    @abstractmethod
    def init(self) -> None:
        """Initialize the driver library. Raises if it cannot be used at all."""

    @abstractmethod
    def device_count(self) -> int:
        """Number of devices visible to the compute runtime."""

    @abstractmethod
    def handle_for_cuda_device(self, cuda_device: int) -> Any:
        """Resolve the driver handle for a compute-runtime (CUDA) device ordinal."""

    @abstractmethod
    def name(self, handle: Any) -> str: ...

    @abstractmethod
    def uuid(self, handle: Any) -> str: ...

    @abstractmethod
    def power_limit(self, handle: Any) -> int: ...

    @abstractmethod
    def power_usage(self, handle: Any) -> int: ...

    @abstractmethod
    def total_energy(self, handle: Any) -> int: ...

    @abstractmethod
    def utilization(self, handle: Any) -> int: ...

    @abstractmethod
    def memory(self, handle: Any) -> Tuple[int, int]: ...


# ------------------------------
# NVML-based implementation
# ------------------------------

class NvmlBackend(DeviceBackend):
    """
    NVML-backed queries for NVIDIA GPUs.

    nvmlInit() is called at most once per backend instance, under a lock.
    CUDA ordinals are mapped through CUDA_VISIBLE_DEVICES when it is set, so
    device counts and handles match what the compute runtime calls device N.
    Entries are NVML indexes or device UUIDs.
    """

    def __init__(self) -> None:
        if not _NVML_AVAILABLE:
            raise RuntimeError("pynvml is not available; cannot use NvmlBackend")
        self._init_lock = threading.Lock()
        self._initialized = False

    def init(self) -> None:
        if self._initialized:
            return
        with self._init_lock:
            if self._initialized:
                return
            pynvml.nvmlInit()
            self._initialized = True
            logger.info("NVML initialized for GPU metrics.")

    def device_count(self) -> int:
        visible = _visible_devices()
        if visible is not None:
            return len(visible)
        return int(pynvml.nvmlDeviceGetCount())

    def handle_for_cuda_device(self, cuda_device: int) -> Any:
        visible = _visible_devices()
        if visible is None:
            return pynvml.nvmlDeviceGetHandleByIndex(int(cuda_device))
        if cuda_device < 0 or cuda_device >= len(visible):
            raise IndexError(f"CUDA device {cuda_device} is not visible")
        entry = visible[cuda_device]
        if entry.isdigit():
            return pynvml.nvmlDeviceGetHandleByIndex(int(entry))
        return pynvml.nvmlDeviceGetHandleByUUID(entry)

    def name(self, handle: Any) -> str:
        return _to_str(pynvml.nvmlDeviceGetName(handle))

    def uuid(self, handle: Any) -> str:
        return _to_str(pynvml.nvmlDeviceGetUUID(handle))

    def power_limit(self, handle: Any) -> int:
        return int(pynvml.nvmlDeviceGetPowerManagementLimit(handle))

    def power_usage(self, handle: Any) -> int:
        return int(pynvml.nvmlDeviceGetPowerUsage(handle))

    def total_energy(self, handle: Any) -> int:
        return int(pynvml.nvmlDeviceGetTotalEnergyConsumption(handle))

    def utilization(self, handle: Any) -> int:
        return int(pynvml.nvmlDeviceGetUtilizationRates(handle).gpu)

    def memory(self, handle: Any) -> Tuple[int, int]:
        mem = pynvml.nvmlDeviceGetMemoryInfo(handle)
        return int(mem.total), int(mem.used)


def _visible_devices() -> Optional[List[str]]:
    raw = os.environ.get("CUDA_VISIBLE_DEVICES")
    if raw is None:
        return None
    return [p.strip() for p in raw.split(",") if p.strip()]


def default_backend() -> Optional[DeviceBackend]:
    """NvmlBackend when pynvml is importable, otherwise None."""
    if not _NVML_AVAILABLE:
        return None
    return NvmlBackend()
