"""
Periodic GPU sampler.

A single daemon thread wakes every `interval_s` seconds and, for every
discovered device and every metric kind, issues one backend query and
writes the result into that device's registry children.

Failure policy (per (device, metric kind) pair):
  - success resets the pair's failure counter to 0;
  - failure logs one warning, increments the counter and publishes 0 for
    that tick only;
  - once the counter reaches `fail_threshold` the pair is never queried,
    published or logged again for the life of the sampler.

Energy is a cumulative driver counter. The first successful read only seeds
a baseline; every later read publishes the difference to the previous one.

Lifecycle:
    IDLE --start()--> RUNNING --stop()--> STOPPING --(loop exits)--> STOPPED

Stop is cooperative: the loop checks the stop event between ticks and the
sleep itself waits on that event, so stop() returns after at most the
in-flight tick. A sampler runs at most once; it cannot be restarted.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from .devices import GpuDevice, RegisteredDevice
from .registry import GpuMetricHandles
from .telemetry_gpu import DeviceBackend

__all__ = [
    "DEFAULT_INTERVAL_S",
    "DEFAULT_FAIL_THRESHOLD",
    "SamplerState",
    "MetricKind",
    "DeviceSlot",
    "GpuMetricsSampler",
]

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_S = 2.0
DEFAULT_FAIL_THRESHOLD = 3

# Driver units -> exported units.
_MILLI = 0.001
_PERCENT = 0.01


class SamplerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class MetricKind(str, Enum):
    # Declaration order is the per-device sampling order.
    POWER_LIMIT = "power_limit"
    POWER_USAGE = "power_usage"
    ENERGY = "energy"
    UTILIZATION = "utilization"
    MEMORY = "memory"


_DESCRIPTION: Dict[MetricKind, str] = {
    MetricKind.POWER_LIMIT: "power limit",
    MetricKind.POWER_USAGE: "power usage",
    MetricKind.ENERGY: "energy consumption",
    MetricKind.UTILIZATION: "utilization",
    MetricKind.MEMORY: "memory",
}


def _zero_counts() -> Dict[MetricKind, int]:
    return {kind: 0 for kind in MetricKind}


@dataclass
class DeviceSlot:
    """Per-device sampling state, indexed by survivor-list position."""

    device: GpuDevice
    metrics: GpuMetricHandles
    fail_counts: Dict[MetricKind, int] = field(default_factory=_zero_counts)
    energy_baseline: Optional[int] = None


class GpuMetricsSampler:
    """
    Background sampler for discovered GPUs.

    Threading model:
      - one daemon thread runs _run_loop() while the sampler is RUNNING;
      - the loop itself takes no locks; slot state is only touched by the
        sampling thread (or by a direct tick() call when not running);
      - _lock only guards lifecycle transitions.
    """

    def __init__(
        self,
        backend: DeviceBackend,
        entries: Sequence[RegisteredDevice],
        *,
        interval_s: float = DEFAULT_INTERVAL_S,
        fail_threshold: int = DEFAULT_FAIL_THRESHOLD,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        if fail_threshold < 1:
            raise ValueError("fail_threshold must be >= 1")

        self._backend = backend
        self._interval_s = float(interval_s)
        self._fail_threshold = int(fail_threshold)
        self._slots: List[DeviceSlot] = [
            DeviceSlot(device=e.device, metrics=e.metrics) for e in entries
        ]
        self._queries: Dict[MetricKind, Callable[[Any], Any]] = {
            MetricKind.POWER_LIMIT: backend.power_limit,
            MetricKind.POWER_USAGE: backend.power_usage,
            MetricKind.ENERGY: backend.total_energy,
            MetricKind.UTILIZATION: backend.utilization,
            MetricKind.MEMORY: backend.memory,
        }

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._state = SamplerState.IDLE
        self._ticks = 0

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> SamplerState:
        return self._state

    @property
    def devices(self) -> List[GpuDevice]:
        return [slot.device for slot in self._slots]

    @property
    def fail_threshold(self) -> int:
        return self._fail_threshold

    @property
    def interval_s(self) -> float:
        return self._interval_s

    @property
    def ticks(self) -> int:
        """Number of completed passes over all devices."""
        return self._ticks

    def fail_count(self, position: int, kind: MetricKind) -> int:
        return self._slots[position].fail_counts[kind]

    def fail_counts(self) -> List[Dict[MetricKind, int]]:
        return [dict(slot.fail_counts) for slot in self._slots]

    def energy_baseline(self, position: int) -> Optional[int]:
        return self._slots[position].energy_baseline

    def is_degraded(self, position: int, kind: MetricKind) -> bool:
        """True once the pair has been permanently dropped from sampling."""
        return self._slots[position].fail_counts[kind] >= self._fail_threshold

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> bool:
        """
        Start the sampling thread.

        Returns False (and does nothing) if there are no devices or the
        sampler has already been started once.
        """
        with self._lock:
            if self._state is not SamplerState.IDLE or not self._slots:
                return False
            self._thread = threading.Thread(
                target=self._run_loop,
                name="infermetrics-gpu-sampler",
                daemon=True,
            )
            self._state = SamplerState.RUNNING
            logger.info(
                "GPU metrics sampler starting for %d device(s), interval=%.3fs fail_threshold=%d",
                len(self._slots),
                self._interval_s,
                self._fail_threshold,
            )
            self._thread.start()
            return True

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Signal the loop to stop and wait for the thread to exit.

        No-op if the sampler was never started. With a timeout, the call may
        return while the state is still STOPPING.
        """
        with self._lock:
            t = self._thread
            if t is None:
                return
            if self._state is SamplerState.RUNNING:
                self._state = SamplerState.STOPPING
            self._stop.set()
        t.join(timeout=timeout)

    def _run_loop(self) -> None:
        try:
            while not self._stop.wait(self._interval_s):
                try:
                    self.tick()
                except Exception:
                    logger.exception("GPU metrics sampler tick failed")
        finally:
            with self._lock:
                self._state = SamplerState.STOPPED
            logger.info("GPU metrics sampler stopped after %d tick(s)", self._ticks)

    # ------------------------------------------------------------------ #
    # Sampling
    # ------------------------------------------------------------------ #

    def tick(self) -> None:
        """One full pass over every device and metric kind."""
        for slot in self._slots:
            for kind in MetricKind:
                if slot.fail_counts[kind] >= self._fail_threshold:
                    continue
                self._sample(slot, kind)
        self._ticks += 1

    def _sample(self, slot: DeviceSlot, kind: MetricKind) -> None:
        try:
            raw = self._queries[kind](slot.device.handle)
        except Exception as e:
            slot.fail_counts[kind] += 1
            logger.warning(
                "failed to get %s for GPU %d: %s",
                _DESCRIPTION[kind],
                slot.device.index,
                e,
                extra={
                    "gpu_index": slot.device.index,
                    "gpu_uuid": slot.device.uuid,
                    "metric_kind": kind.value,
                    "fail_count": slot.fail_counts[kind],
                },
            )
            self._publish_failure(slot, kind)
            return

        slot.fail_counts[kind] = 0
        self._publish(slot, kind, raw)

    def _publish(self, slot: DeviceSlot, kind: MetricKind, raw: Any) -> None:
        m = slot.metrics
        if kind is MetricKind.POWER_LIMIT:
            m.power_limit.set(float(raw) * _MILLI)
        elif kind is MetricKind.POWER_USAGE:
            m.power_usage.set(float(raw) * _MILLI)
        elif kind is MetricKind.UTILIZATION:
            m.utilization.set(float(raw) * _PERCENT)
        elif kind is MetricKind.MEMORY:
            total, used = raw
            m.memory_total.set(float(total))
            m.memory_used.set(float(used))
        elif kind is MetricKind.ENERGY:
            self._publish_energy(slot, int(raw))

    def _publish_energy(self, slot: DeviceSlot, current: int) -> None:
        baseline = slot.energy_baseline
        slot.energy_baseline = current
        if baseline is None:
            # First observation: no delta yet.
            return
        delta = current - baseline
        if delta < 0:
            # Counters cannot go down; treat as a driver counter reset.
            logger.warning(
                "energy counter for GPU %d went backwards (%d -> %d), rebaselining",
                slot.device.index,
                baseline,
                current,
                extra={"gpu_index": slot.device.index, "gpu_uuid": slot.device.uuid},
            )
            return
        slot.metrics.energy_consumption.inc(delta * _MILLI)

    @staticmethod
    def _publish_failure(slot: DeviceSlot, kind: MetricKind) -> None:
        m = slot.metrics
        if kind is MetricKind.POWER_LIMIT:
            m.power_limit.set(0.0)
        elif kind is MetricKind.POWER_USAGE:
            m.power_usage.set(0.0)
        elif kind is MetricKind.UTILIZATION:
            m.utilization.set(0.0)
        elif kind is MetricKind.MEMORY:
            m.memory_total.set(0.0)
            m.memory_used.set(0.0)
        # Energy is a counter: a failed read contributes nothing.
