"""HTTP export surface for a running discovery component.

Exposes:
  GET  /api/v1/targets   — current targets in the common JSON target-list format
  GET  /api/v1/status    — poll status, last success and last error
  PUT  /api/v1/config    — reconfigure at runtime
  GET  /health           — liveness check

Start with::

    python -m beacon --serve --config discovery.json
"""

from __future__ import annotations

import logging
import os
from typing import Any

from fastapi import APIRouter, FastAPI, HTTPException
from pydantic import BaseModel, Field

from beacon import __version__
from beacon.component import DiscoveryComponent
from beacon.config import DiscoveryConfig
from beacon.errors import ConfigurationError, ShutdownError
from beacon.targets import count_targets

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["discovery"])

_component: DiscoveryComponent | None = None


def set_component(component: DiscoveryComponent | None) -> None:
    global _component
    _component = component


def _get_component() -> DiscoveryComponent:
    if _component is None:
        raise HTTPException(status_code=503, detail="Discovery component not configured")
    return _component


# ── Request models ────────────────────────────────────────────────


class FilterBody(BaseModel):
    name: str
    values: list[str] = Field(default_factory=list)


class ConfigBody(BaseModel):
    backend: str = "ec2"
    endpoint: str = ""
    region: str = ""
    access_key: str = ""
    secret_key: str = ""
    profile: str = ""
    role_arn: str = ""
    refresh_interval: float | str | None = None
    port: int | None = None
    filters: list[FilterBody] = Field(default_factory=list)
    http_client_config: dict[str, Any] | None = None


# ── Endpoints ─────────────────────────────────────────────────────


def _status(component: DiscoveryComponent) -> dict[str, Any]:
    state = component.state
    cfg = component.config
    if state is None or cfg is None:
        return {"status": "not_started", "running": False}
    exported = state.exported
    return {
        "status": state.status.value,
        "running": component.running,
        "backend": cfg.backend,
        "refresh_interval": state.refresh_interval,
        "last_success": state.last_success.isoformat() if state.last_success else None,
        "last_error": str(state.last_error) if state.last_error else None,
        "groups": len(exported),
        "targets": count_targets(exported),
    }


@router.get("/targets")
async def get_targets():
    component = _get_component()
    return [group.to_dict() for group in component.export()]


@router.get("/status")
async def get_status():
    return _status(_get_component())


@router.put("/config")
async def put_config(body: ConfigBody):
    component = _get_component()
    data = {k: v for k, v in body.model_dump().items() if v is not None}
    try:
        await component.update(DiscoveryConfig.from_dict(data))
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ShutdownError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return _status(component)


def create_app(component: DiscoveryComponent | None = None) -> FastAPI:
    application = FastAPI(title="beacon", version=__version__)
    application.include_router(router)

    @application.get("/health")
    async def health():
        if _component is None:
            return {"status": "degraded", "running": False}
        healthy = _component.running and _component.last_error is None
        return {"status": "ok" if healthy else "degraded", "running": _component.running}

    if component is not None:
        set_component(component)
    return application


app = create_app()


# ── Entry point ───────────────────────────────────────────────────


async def serve(component: DiscoveryComponent) -> None:
    """Run the HTTP surface until cancelled, with *component* injected."""
    import uvicorn

    host = os.environ.get("BEACON_HOST", "0.0.0.0")
    port = int(os.environ.get("BEACON_PORT", "9180"))
    set_component(component)
    logger.info("Serving discovered targets on %s:%d", host, port)
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="info"))
    await server.serve()
