import logging
import threading
import time

import pytest

from infermetrics.devices import discover_devices
from infermetrics.sampler import GpuMetricsSampler, MetricKind, SamplerState


def _sampler(backend, registry, **kwargs):
    entries = discover_devices(backend, backend.count, registry)
    return GpuMetricsSampler(backend, entries, **kwargs)


def _gauge(registry, name, uuid):
    return registry.get_sample_value(name, {"gpu_uuid": uuid})


def _energy(registry, uuid):
    return registry.get_sample_value("nv_energy_consumption_total", {"gpu_uuid": uuid})


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return False


def test_one_zeroed_counter_per_device_and_kind(registry, make_backend):
    backend = make_backend(count=3)
    sampler = _sampler(backend, registry)

    counts = sampler.fail_counts()
    assert len(counts) == 3
    for per_device in counts:
        assert len(per_device) == 5
        assert set(per_device.values()) == {0}
    assert all(sampler.energy_baseline(i) is None for i in range(3))
    assert sampler.state is SamplerState.IDLE


def test_tick_publishes_values_in_canonical_units(registry, backend):
    sampler = _sampler(backend, registry)
    sampler.tick()

    for uuid in ("GPU-0000", "GPU-0001"):
        assert _gauge(registry, "nv_gpu_power_limit", uuid) == pytest.approx(250.0)
        assert _gauge(registry, "nv_gpu_power_usage", uuid) == pytest.approx(120.5)
        assert _gauge(registry, "nv_gpu_utilization", uuid) == pytest.approx(0.42)
        assert _gauge(registry, "nv_gpu_memory_total_bytes", uuid) == 16 * 1024**3
        assert _gauge(registry, "nv_gpu_memory_used_bytes", uuid) == 4 * 1024**3
    assert sampler.ticks == 1


def test_failure_publishes_zero_for_that_tick_only(registry, backend):
    sampler = _sampler(backend, registry)
    sampler.tick()
    assert _gauge(registry, "nv_gpu_power_usage", "GPU-0000") == pytest.approx(120.5)

    backend.fail_next[("power_usage", 0)] = 1
    backend.fail_next[("memory", 0)] = 1
    sampler.tick()
    assert _gauge(registry, "nv_gpu_power_usage", "GPU-0000") == 0.0
    assert _gauge(registry, "nv_gpu_memory_total_bytes", "GPU-0000") == 0.0
    assert _gauge(registry, "nv_gpu_memory_used_bytes", "GPU-0000") == 0.0
    assert sampler.fail_count(0, MetricKind.POWER_USAGE) == 1
    # Other device unaffected.
    assert _gauge(registry, "nv_gpu_power_usage", "GPU-0001") == pytest.approx(120.5)

    sampler.tick()
    assert _gauge(registry, "nv_gpu_power_usage", "GPU-0000") == pytest.approx(120.5)
    assert sampler.fail_count(0, MetricKind.POWER_USAGE) == 0


def test_success_resets_failure_counter(registry, backend):
    sampler = _sampler(backend, registry)
    backend.fail_next[("utilization", 1)] = 2

    sampler.tick()
    sampler.tick()
    assert sampler.fail_count(1, MetricKind.UTILIZATION) == 2

    sampler.tick()
    assert sampler.fail_count(1, MetricKind.UTILIZATION) == 0

    # Two more failures do not reach the threshold after the reset.
    backend.fail_next[("utilization", 1)] = 2
    for _ in range(4):
        sampler.tick()
    assert not sampler.is_degraded(1, MetricKind.UTILIZATION)
    assert backend.calls[("utilization", 1)] == 7


def test_persistently_failing_pair_is_dropped_after_threshold(registry, backend):
    # Device 1's power limit fails on every tick.
    backend.always_fail.add(("power_limit", 1))
    sampler = _sampler(backend, registry)

    for _ in range(3):
        sampler.tick()
    assert sampler.fail_count(1, MetricKind.POWER_LIMIT) == 3
    assert backend.calls[("power_limit", 1)] == 3

    for _ in range(5):
        sampler.tick()

    assert sampler.fail_count(1, MetricKind.POWER_LIMIT) == 3
    assert backend.calls[("power_limit", 1)] == 3
    assert sampler.is_degraded(1, MetricKind.POWER_LIMIT)

    # Everything else keeps being sampled.
    assert backend.calls[("power_limit", 0)] == 8
    for method in ("power_usage", "total_energy", "utilization", "memory"):
        assert backend.calls[(method, 0)] == 8
        assert backend.calls[(method, 1)] == 8
    assert _gauge(registry, "nv_gpu_power_limit", "GPU-0000") == pytest.approx(250.0)
    assert all(v == 0 for k, v in sampler.fail_counts()[0].items())


def test_log_lines_bounded_by_threshold(registry, backend, caplog):
    backend.always_fail.add(("memory", 0))
    sampler = _sampler(backend, registry, fail_threshold=3)

    with caplog.at_level(logging.WARNING, logger="infermetrics.sampler"):
        for _ in range(10):
            sampler.tick()

    lines = [r for r in caplog.records if "failed to get memory for GPU 0" in r.getMessage()]
    assert len(lines) == 3
    assert lines[-1].metric_kind == "memory"
    assert lines[-1].gpu_uuid == "GPU-0000"


def test_custom_threshold(registry, backend):
    backend.always_fail.add(("total_energy", 0))
    sampler = _sampler(backend, registry, fail_threshold=1)
    for _ in range(3):
        sampler.tick()
    assert backend.calls[("total_energy", 0)] == 1
    assert sampler.fail_count(0, MetricKind.ENERGY) == 1


def test_energy_first_read_only_seeds_baseline(registry, backend):
    backend.energy_readings[0] = [5_000, 7_000, 7_500]
    sampler = _sampler(backend, registry)

    sampler.tick()
    assert sampler.energy_baseline(0) == 5_000
    assert _energy(registry, "GPU-0000") == 0.0

    sampler.tick()
    assert sampler.energy_baseline(0) == 7_000
    assert _energy(registry, "GPU-0000") == pytest.approx(2.0)

    sampler.tick()
    assert sampler.energy_baseline(0) == 7_500
    assert _energy(registry, "GPU-0000") == pytest.approx(2.5)


def test_energy_failure_keeps_baseline(registry, backend):
    backend.energy_readings[0] = [10_000, 13_000]
    sampler = _sampler(backend, registry)

    sampler.tick()
    backend.fail_next[("total_energy", 0)] = 1
    sampler.tick()
    assert sampler.energy_baseline(0) == 10_000
    assert _energy(registry, "GPU-0000") == 0.0
    assert sampler.fail_count(0, MetricKind.ENERGY) == 1

    sampler.tick()
    assert _energy(registry, "GPU-0000") == pytest.approx(3.0)
    assert sampler.fail_count(0, MetricKind.ENERGY) == 0


def test_energy_counter_reset_rebaselines(registry, backend):
    backend.energy_readings[0] = [50_000, 1_000, 4_000]
    sampler = _sampler(backend, registry)

    sampler.tick()
    sampler.tick()
    assert sampler.energy_baseline(0) == 1_000
    assert _energy(registry, "GPU-0000") == 0.0

    sampler.tick()
    assert _energy(registry, "GPU-0000") == pytest.approx(3.0)


def test_energy_baseline_seeded_on_first_success_after_failures(registry, backend):
    backend.energy_readings[1] = [2_000, 2_600]
    backend.fail_next[("total_energy", 1)] = 2
    sampler = _sampler(backend, registry)

    sampler.tick()
    sampler.tick()
    assert sampler.energy_baseline(1) is None

    sampler.tick()
    assert sampler.energy_baseline(1) == 2_000
    assert _energy(registry, "GPU-0001") == 0.0

    sampler.tick()
    assert _energy(registry, "GPU-0001") == pytest.approx(0.6)


def test_start_runs_ticks_and_stop_joins(registry, backend):
    sampler = _sampler(backend, registry, interval_s=0.01)

    assert sampler.start() is True
    assert sampler.state is SamplerState.RUNNING
    assert _wait_for(lambda: sampler.ticks >= 2)

    sampler.stop()
    assert sampler.state is SamplerState.STOPPED
    ticks = sampler.ticks
    time.sleep(0.05)
    assert sampler.ticks == ticks


def test_sampler_runs_once(registry, backend):
    sampler = _sampler(backend, registry, interval_s=0.01)
    assert sampler.start() is True
    assert sampler.start() is False
    sampler.stop()
    assert sampler.start() is False
    assert sampler.state is SamplerState.STOPPED


def test_stop_before_start_is_noop(registry, backend):
    sampler = _sampler(backend, registry)
    sampler.stop()
    assert sampler.state is SamplerState.IDLE
    assert backend.calls[("power_limit", 0)] == 0


def test_stop_interrupts_interval_sleep(registry, backend):
    sampler = _sampler(backend, registry, interval_s=30.0)
    sampler.start()

    t0 = time.monotonic()
    sampler.stop()
    assert time.monotonic() - t0 < 5.0
    assert sampler.state is SamplerState.STOPPED
    # Stopped during the first sleep, before any tick.
    assert sampler.ticks == 0


def test_no_devices_never_starts(registry, make_backend):
    backend = make_backend(count=0)
    sampler = _sampler(backend, registry)
    assert sampler.start() is False
    assert sampler.state is SamplerState.IDLE


def test_invalid_parameters_rejected(registry, backend):
    with pytest.raises(ValueError):
        _sampler(backend, registry, interval_s=0)
    with pytest.raises(ValueError):
        GpuMetricsSampler(backend, [], fail_threshold=0)


def test_stop_during_tick_lets_the_pass_finish(registry, backend):
    entered = threading.Event()
    release = threading.Event()

    def block():
        entered.set()
        release.wait(5.0)

    backend.hooks[("power_usage", 0)] = block
    sampler = _sampler(backend, registry, interval_s=0.01)
    sampler.start()
    assert entered.wait(5.0)

    stopper = threading.Thread(target=sampler.stop)
    stopper.start()
    assert _wait_for(lambda: sampler.state is SamplerState.STOPPING)
    release.set()
    stopper.join(5.0)

    assert not stopper.is_alive()
    assert sampler.state is SamplerState.STOPPED
    assert sampler.ticks == 1
    # Device 1 was still sampled in the interrupted pass.
    assert backend.calls[("memory", 1)] == 1
    assert backend.calls[("power_usage", 0)] == 1


def test_loop_survives_a_failing_tick(registry, backend, caplog):
    # Malformed memory info makes publishing raise for device 0.
    backend.memory_bytes = (1,)
    sampler = _sampler(backend, registry, interval_s=0.01)

    with caplog.at_level(logging.ERROR, logger="infermetrics.sampler"):
        sampler.start()
        assert _wait_for(lambda: backend.calls[("memory", 0)] >= 2)
        sampler.stop()

    assert sampler.state is SamplerState.STOPPED
    assert any("tick failed" in r.getMessage() for r in caplog.records)
