from contextlib import asynccontextmanager
from functools import lru_cache
import logging
from pathlib import Path
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from sendconnect.api.routers.system import build_system_router, reset_ready_cache
from sendconnect.api.routers.topics import build_topics_router
from sendconnect.config import settings
from sendconnect.indexing import IndexingGateway
from sendconnect.lifecycle import TopicLifecycleOrchestrator
from sendconnect.llama_cloud import LlamaCloudClient
from sendconnect.observability import (
    configure_logging,
    normalize_request_id,
    reset_request_id,
    sanitize_for_logging,
    set_request_id,
)
from sendconnect.retrieval import RetrievalGateway
from sendconnect.storage import BlobStore, build_blob_store
from sendconnect.synthesis import AnswerSynthesizer
from sendconnect.topic_store import TopicStore, build_topic_store
from sendconnect.version import APP_VERSION

logger = logging.getLogger("sendconnect.api")


@lru_cache(maxsize=1)
def _cached_topic_store() -> TopicStore:
    return build_topic_store(settings)


def get_topic_store() -> TopicStore:
    return _cached_topic_store()


@lru_cache(maxsize=1)
def _cached_blob_store() -> BlobStore:
    return build_blob_store(settings)


def get_blob_store() -> BlobStore:
    return _cached_blob_store()


@lru_cache(maxsize=1)
def _cached_llama_cloud_client() -> LlamaCloudClient:
    return LlamaCloudClient.from_settings(settings)


def get_llama_cloud_client() -> LlamaCloudClient:
    return _cached_llama_cloud_client()


@lru_cache(maxsize=1)
def _cached_lifecycle() -> TopicLifecycleOrchestrator:
    llama_cloud = get_llama_cloud_client()
    blob_store = get_blob_store()
    return TopicLifecycleOrchestrator(
        settings=settings,
        topic_store=get_topic_store(),
        blob_store=blob_store,
        indexing_gateway=IndexingGateway(blob_store=blob_store, llama_cloud=llama_cloud),
        retrieval_gateway=RetrievalGateway(llama_cloud=llama_cloud),
        synthesizer=AnswerSynthesizer(settings=settings),
        llama_cloud=llama_cloud,
    )


def get_lifecycle() -> TopicLifecycleOrchestrator:
    return _cached_lifecycle()


def reset_dependency_caches() -> None:
    if _cached_llama_cloud_client.cache_info().currsize:
        _cached_llama_cloud_client().close()
    for cached in (_cached_lifecycle, _cached_llama_cloud_client, _cached_blob_store, _cached_topic_store):
        cached.cache_clear()
    reset_ready_cache()


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging(settings.log_level)
    logger.info("application_startup", extra={"event": "application_startup", "environment": settings.app_env})
    if settings.storage_backend.strip().lower() in {"local", "filesystem", "fs"}:
        Path(settings.storage_root).mkdir(parents=True, exist_ok=True)
    get_topic_store().init()
    yield
    reset_dependency_caches()
    logger.info("application_shutdown", extra={"event": "application_shutdown"})


def create_app() -> FastAPI:
    cors_origins = settings.cors_origins_list
    if settings.cors_allow_credentials and any(origin == "*" for origin in cors_origins):
        raise RuntimeError("Invalid CORS_ORIGINS: wildcard '*' is not allowed when credentials are enabled.")

    app = FastAPI(title=settings.app_name, version=APP_VERSION, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PATCH"],
        allow_headers=["Authorization", "Content-Type", settings.request_id_header],
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        request_id = normalize_request_id(request.headers.get(settings.request_id_header))
        request.state.request_id = request_id
        token = set_request_id(request_id)
        started = time.perf_counter()

        logger.info(
            "request_started",
            extra={
                "event": "request_started",
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "query": sanitize_for_logging(dict(request.query_params)),
                "client_ip": request.client.host if request.client else None,
            },
        )

        try:
            response = await call_next(request)
            elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
            response.headers[settings.request_id_header] = request_id
            logger.info(
                "request_completed",
                extra={
                    "event": "request_completed",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": elapsed_ms,
                },
            )
            return response
        except Exception:
            elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
            logger.exception(
                "request_failed",
                extra={
                    "event": "request_failed",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "duration_ms": elapsed_ms,
                },
            )
            raise
        finally:
            reset_request_id(token)

    # Getters are resolved per request so tests can monkeypatch this module.
    app.include_router(
        build_system_router(
            get_topic_store=lambda: get_topic_store(),
            get_blob_store=lambda: get_blob_store(),
        )
    )
    topics_router = build_topics_router(
        get_lifecycle=lambda: get_lifecycle(),
        get_topic_store=lambda: get_topic_store(),
    )
    app.include_router(topics_router)
    app.include_router(topics_router, prefix="/api")
    return app


app = create_app()
