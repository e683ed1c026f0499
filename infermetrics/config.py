# infermetrics/config.py
from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except Exception:  # pragma: no cover
    yaml = None

from pydantic import BaseModel, ConfigDict


_log = logging.getLogger(__name__)

# Presence alone (any value, even empty) forces GPU discovery off.
CPU_ONLY_ENV = "TRITON_SERVER_CPU_ONLY"


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    v = raw.strip().lower()
    return v in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except Exception:
        _log.warning("Invalid %s=%r, falling back to %s", name, raw, default)
        return default


def cpu_only_requested() -> bool:
    """True when the CPU-only override variable is present in the environment."""
    return CPU_ONLY_ENV in os.environ


def _load_yaml_mapping(path: str) -> Dict[str, Any]:
    """
    Load a simple top-level mapping from YAML.

    Missing path, missing PyYAML or a non-mapping document yield {}.
    """
    if not path or yaml is None:
        return {}
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except Exception:
        _log.warning("failed to load YAML config from %s", path, exc_info=True)
        return {}
    if not isinstance(doc, dict):
        return {}
    return {str(k): v for k, v in doc.items()}


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class Settings(BaseModel):
    # --- Enable toggles ----------------------------------------------------

    metrics_enable: bool = True
    gpu_metrics_enable: bool = True
    cpu_only: bool = False

    # --- GPU sampler -------------------------------------------------------

    # Sleep between sampler ticks, in milliseconds.
    sample_interval_ms: int = 2000
    # Consecutive per-tick failures after which a (device, metric) pair is
    # never queried again.
    fail_threshold: int = 3

    # --- Exposition --------------------------------------------------------

    metrics_port: int = 8002
    prom_standalone_server: bool = False

    # --- Logging -----------------------------------------------------------

    log_level: str = "INFO"

    # Indicates how this config reached the process (defaults/yaml).
    config_origin: str = "defaults"

    model_config = ConfigDict(extra="forbid", frozen=True)

    @property
    def sample_interval_s(self) -> float:
        return self.sample_interval_ms / 1000.0


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------


def load_settings(path: Optional[str] = None) -> Settings:
    """
    Load Settings from defaults, optional YAML, and environment variables.

    Priority:
      1. Settings defaults (in-code).
      2. YAML file at `path` or INFERMETRICS_CONFIG_PATH.
      3. Environment variables (INFERMETRICS_*), bounds-checked.
      4. TRITON_SERVER_CPU_ONLY presence, which always wins for cpu_only.
    """
    merged: Dict[str, Any] = Settings().model_dump()
    origin = "defaults"

    # 1) YAML overlay
    yaml_path = (path or os.environ.get("INFERMETRICS_CONFIG_PATH", "")).strip()
    yaml_doc = _load_yaml_mapping(yaml_path)
    if yaml_doc:
        tmp = dict(merged)
        tmp.update(yaml_doc)
        # extra="forbid" rejects unknown keys here.
        merged = Settings(**tmp).model_dump()
        origin = "yaml"

    # 2) Environment overrides
    merged["metrics_enable"] = _env_bool("INFERMETRICS_METRICS_ENABLE", merged["metrics_enable"])
    merged["gpu_metrics_enable"] = _env_bool(
        "INFERMETRICS_GPU_METRICS_ENABLE", merged["gpu_metrics_enable"]
    )
    merged["cpu_only"] = _env_bool("INFERMETRICS_CPU_ONLY", merged["cpu_only"])

    interval = _env_int("INFERMETRICS_SAMPLE_INTERVAL_MS", merged["sample_interval_ms"])
    if 10 <= interval <= 600_000:
        merged["sample_interval_ms"] = interval

    threshold = _env_int("INFERMETRICS_FAIL_THRESHOLD", merged["fail_threshold"])
    if threshold >= 1:
        merged["fail_threshold"] = threshold

    port = _env_int("INFERMETRICS_METRICS_PORT", merged["metrics_port"])
    if 0 <= port <= 65535:
        merged["metrics_port"] = port
    merged["prom_standalone_server"] = _env_bool(
        "INFERMETRICS_PROM_STANDALONE_SERVER", merged["prom_standalone_server"]
    )

    merged["log_level"] = os.environ.get("INFERMETRICS_LOG_LEVEL", merged["log_level"])

    # 3) CPU-only override
    if cpu_only_requested():
        merged["cpu_only"] = True

    merged["config_origin"] = origin
    return Settings(**merged)
