"""
GPU discovery.

discover_devices() walks every device visible to the compute runtime once,
keeps the ones whose handle resolves, and registers one child per GPU metric
family for each survivor. Failures on individual devices are logged and skipped;
they never abort discovery of the remaining devices.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, NamedTuple, Optional

from prometheus_client import CollectorRegistry

from .registry import GpuFamilies, GpuMetricHandles, build_gpu_families
from .telemetry_gpu import DeviceBackend

logger = logging.getLogger(__name__)

UNKNOWN_UUID = "unknown"


@dataclass(frozen=True)
class GpuDevice:
    """
    A device that survived discovery.

    - index:  compute-runtime (CUDA) ordinal of the device, not its
              survivor-list position.
    - handle: opaque backend handle, only ever passed back to the backend.
    - uuid:   device UUID, or "unknown" if it could not be resolved.
    - name:   human-readable device name, if the driver reported one.
    """

    index: int
    handle: Any
    uuid: str
    name: Optional[str] = None


class RegisteredDevice(NamedTuple):
    device: GpuDevice
    metrics: GpuMetricHandles


def discover_devices(
    backend: DeviceBackend,
    count: int,
    registry: CollectorRegistry,
    *,
    families_factory: Callable[[CollectorRegistry], GpuFamilies] = build_gpu_families,
) -> List[RegisteredDevice]:
    """
    Enumerate CUDA ordinals 0..count-1 and register their GPU metrics.

    GPU families are registered lazily, on the first surviving device, so a
    host where every device fails to resolve ends up with no GPU families in
    the registry at all. The returned list preserves enumeration order and
    contains no entries for skipped devices.
    """
    families: Optional[GpuFamilies] = None
    out: List[RegisteredDevice] = []

    for didx in range(count):
        try:
            handle = backend.handle_for_cuda_device(didx)
        except Exception as e:
            logger.warning(
                "failed to get handle for device %d, GPU metrics will not be available for this device: %s",
                didx,
                e,
            )
            continue

        try:
            name: Optional[str] = backend.name(handle)
        except Exception:
            name = None
        if name:
            logger.info("Collecting metrics for GPU %d: %s", didx, name)
        else:
            logger.info("Collecting metrics for GPU %d", didx)

        try:
            uuid = backend.uuid(handle) or UNKNOWN_UUID
        except Exception:
            uuid = UNKNOWN_UUID

        if families is None:
            families = families_factory(registry)

        device = GpuDevice(index=didx, handle=handle, uuid=uuid, name=name)
        out.append(RegisteredDevice(device=device, metrics=families.handles_for(uuid)))

    return out
