from __future__ import annotations

import time
from typing import Callable

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from sendconnect.config import settings
from sendconnect.storage import BlobStore
from sendconnect.topic_store import TopicStore
from sendconnect.version import APP_VERSION

_READY_CACHE_TTL_SECONDS = 30.0
_ready_cache: dict[str, object] = {
    "ts": 0.0,
    "ok": None,
    "payload": None,
}


def _cache_set(ok: bool, payload: dict[str, object]) -> None:
    _ready_cache["ts"] = time.time()
    _ready_cache["ok"] = ok
    _ready_cache["payload"] = payload


def _cache_get() -> dict[str, object] | None:
    if time.time() - float(_ready_cache.get("ts") or 0.0) > _READY_CACHE_TTL_SECONDS:
        return None
    payload = _ready_cache.get("payload")
    return payload if isinstance(payload, dict) else None


def reset_ready_cache() -> None:
    _cache_set(False, {})
    _ready_cache["ts"] = 0.0


def build_system_router(
    *,
    get_topic_store: Callable[[], TopicStore],
    get_blob_store: Callable[[], BlobStore],
) -> APIRouter:
    router = APIRouter()

    @router.get("/")
    def root() -> dict[str, str]:
        return {"service": "sendconnect-backend", "status": "running", "version": APP_VERSION}

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "environment": settings.app_env}

    @router.get("/ready", response_model=None)
    def ready() -> JSONResponse:
        cached = _cache_get()
        if cached is not None:
            return JSONResponse(status_code=200 if _ready_cache.get("ok") else 503, content=cached)

        checks: dict[str, object] = {}
        payload: dict[str, object] = {"status": "ready", "environment": settings.app_env, "checks": checks}
        probes = (
            ("topic_store", settings.topic_store_backend, lambda: get_topic_store().probe()),
            ("storage", settings.storage_backend, lambda: get_blob_store().probe()),
        )
        for name, backend, probe in probes:
            try:
                probe()
                checks[name] = {"ok": True, "backend": backend}
            except Exception as exc:
                payload["status"] = "not_ready"
                checks[name] = {"ok": False, "backend": backend, "error": str(exc)}
                _cache_set(False, payload)
                return JSONResponse(status_code=503, content=payload)

        _cache_set(True, payload)
        return JSONResponse(status_code=200, content=payload)

    return router
