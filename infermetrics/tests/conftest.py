from collections import defaultdict
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

import pytest
from prometheus_client import CollectorRegistry

from infermetrics.telemetry_gpu import DeviceBackend


class FakeNvmlError(RuntimeError):
    pass


class FakeBackend(DeviceBackend):
    """
    In-memory GPU backend.

    Handles are plain device indexes. Every call is counted in `calls`,
    keyed by (method, index) for per-device queries and by method name for
    device-wide ones.
    """

    def __init__(
        self,
        count: int = 2,
        *,
        bad_handles: Iterable[int] = (),
        no_uuid: Iterable[int] = (),
        no_name: Iterable[int] = (),
        init_error: Optional[Exception] = None,
        count_error: Optional[Exception] = None,
    ) -> None:
        self.count = count
        self.bad_handles: Set[int] = set(bad_handles)
        self.no_uuid: Set[int] = set(no_uuid)
        self.no_name: Set[int] = set(no_name)
        self.init_error = init_error
        self.count_error = count_error

        self.always_fail: Set[Tuple[str, int]] = set()
        self.fail_next: Dict[Tuple[str, int], int] = defaultdict(int)
        self.calls: Dict[Any, int] = defaultdict(int)
        # Called after a call is counted, keyed like `calls`.
        self.hooks: Dict[Any, Callable[[], None]] = {}
        self._lock = threading.Lock()

        self.power_limit_mw = 250_000
        self.power_usage_mw = 120_500
        self.utilization_pct = 42
        self.memory_bytes = (16 * 1024**3, 4 * 1024**3)
        self.energy_readings: Dict[int, List[int]] = {}
        self._energy_default: Dict[int, int] = defaultdict(lambda: 1_000_000)

    # -- helpers -------------------------------------------------------

    def _count(self, key: Any) -> None:
        with self._lock:
            self.calls[key] += 1
        hook = self.hooks.get(key)
        if hook is not None:
            hook()

    def _query(self, method: str, handle: int) -> None:
        key = (method, handle)
        self._count(key)
        if key in self.always_fail:
            raise FakeNvmlError(f"{method} not supported")
        if self.fail_next[key] > 0:
            self.fail_next[key] -= 1
            raise FakeNvmlError(f"{method} transient failure")

    def resolution_calls(self) -> int:
        return sum(
            n
            for k, n in self.calls.items()
            if k in ("init", "device_count") or (isinstance(k, tuple) and k[0] in ("handle", "uuid", "name"))
        )

    # -- DeviceBackend -------------------------------------------------

    def init(self) -> None:
        self._count("init")
        if self.init_error is not None:
            raise self.init_error

    def device_count(self) -> int:
        self._count("device_count")
        if self.count_error is not None:
            raise self.count_error
        return self.count

    def handle_for_cuda_device(self, cuda_device: int) -> Any:
        self._count(("handle", cuda_device))
        if cuda_device < 0 or cuda_device >= self.count:
            raise FakeNvmlError("invalid argument")
        if cuda_device in self.bad_handles:
            raise FakeNvmlError("GPU is lost")
        return cuda_device

    def name(self, handle: Any) -> str:
        self._count(("name", handle))
        if handle in self.no_name:
            raise FakeNvmlError("not supported")
        return f"Fake GPU {handle}"

    def uuid(self, handle: Any) -> str:
        self._count(("uuid", handle))
        if handle in self.no_uuid:
            raise FakeNvmlError("not supported")
        return f"GPU-{handle:04d}"

    def power_limit(self, handle: Any) -> int:
        self._query("power_limit", handle)
        return self.power_limit_mw

    def power_usage(self, handle: Any) -> int:
        self._query("power_usage", handle)
        return self.power_usage_mw

    def total_energy(self, handle: Any) -> int:
        self._query("total_energy", handle)
        readings = self.energy_readings.get(handle)
        if readings:
            return readings.pop(0)
        self._energy_default[handle] += 1_000
        return self._energy_default[handle]

    def utilization(self, handle: Any) -> int:
        self._query("utilization", handle)
        return self.utilization_pct

    def memory(self, handle: Any) -> Tuple[int, int]:
        self._query("memory", handle)
        return self.memory_bytes


@pytest.fixture
def registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend(count=2)


@pytest.fixture
def make_backend():
    return FakeBackend
