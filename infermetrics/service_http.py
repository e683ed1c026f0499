# FILE: infermetrics/service_http.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, HTTPException, Response, status
from prometheus_client import CONTENT_TYPE_LATEST

from .config import Settings, load_settings
from .metrics import Metrics

logger = logging.getLogger(__name__)

API_VERSION = "0.1.0"


def create_app(
    metrics: Optional[Metrics] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the scrape surface for the telemetry subsystem.

    Exposes:
    - /metrics: text exposition of the facility registry (404 while metrics
      are disabled);
    - /healthz, /readyz: enable flags, discovered GPUs and sampler state.

    Metrics (and GPU metrics, when configured) are enabled while the app is
    built; the GPU sampler is stopped when the app shuts down.

    Usage: uvicorn --factory infermetrics.service_http:create_app
    """
    if settings is None:
        settings = metrics.settings if metrics is not None else load_settings()
    if metrics is None:
        metrics = Metrics(settings)

    if settings.metrics_enable:
        metrics.enable_metrics()
        if settings.gpu_metrics_enable:
            metrics.enable_gpu_metrics()
        if settings.prom_standalone_server:
            metrics.ensure_server()

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        try:
            yield
        finally:
            metrics.shutdown()

    app = FastAPI(
        title="infermetrics",
        version=API_VERSION,
        openapi_url=None,
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.metrics = metrics

    @app.get("/metrics")
    def metrics_text() -> Response:
        if not metrics.enabled:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="metrics disabled")
        return Response(metrics.serialized_metrics(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        sampler = metrics.sampler
        return {
            "ok": True,
            "metrics_enabled": metrics.enabled,
            "gpu_metrics_enabled": metrics.gpu_metrics_enabled,
            "gpus": [
                {"index": d.index, "uuid": d.uuid, "name": d.name}
                for d in metrics.devices
            ],
            "sampler_state": sampler.state.value if sampler is not None else None,
            "config_origin": settings.config_origin,
        }

    @app.get("/readyz")
    def readyz() -> Dict[str, Any]:
        return {
            "ready": metrics.enabled,
            "http_version": API_VERSION,
        }

    logger.debug(
        "telemetry HTTP surface built",
        extra={"metrics_enabled": metrics.enabled, "gpu_count": len(metrics.devices)},
    )
    return app


if __name__ == "__main__":
    import uvicorn

    from .logging import configure_json_logging

    _settings = load_settings()
    configure_json_logging(level=_settings.log_level)
    uvicorn.run(
        create_app(settings=_settings),
        host="127.0.0.1",
        port=8000,
    )
