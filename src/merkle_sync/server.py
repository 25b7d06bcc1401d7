"""HTTP surface of the remote index (JSON over HTTP)."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .ai import ChunkProcessor
from .auth import CallerIdentity, CredentialVerifier, StaticTokenVerifier, parse_bearer
from .config import ServerSettings
from .errors import InvalidRequestError, SyncError
from .kv import KVStore, LanceKVStore, MemoryKVStore
from .protocol import (
    ErrorBody,
    HealthResponse,
    InitRequest,
    Phase1Request,
    RootCheckRequest,
    SearchRequest,
    parse_request,
    parse_sync_request,
)
from .search_index import LanceVectorIndex, MemoryVectorIndex, VectorIndex
from .service import SyncService

logger = logging.getLogger(__name__)


async def read_json(request: Request) -> Any:
    """Decode the request body, mapping bad JSON to InvalidRequestError."""
    raw = await request.body()
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidRequestError("Invalid JSON body") from e


def create_app(service: SyncService, verifier: CredentialVerifier) -> FastAPI:
    """
    Build the FastAPI app around an already-opened service.

    The KV store behind ``service`` is owned by the caller, which opens it
    before serving and closes it afterwards.
    """
    app = FastAPI(title="Merkle Sync Index", version=__version__)
    app.state.service = service

    @app.exception_handler(SyncError)
    async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        else:
            logger.info("%s %s rejected: %s", request.method, request.url.path, exc.message)
        body = ErrorBody.model_validate(exc.to_dict())
        return JSONResponse(body.model_dump(mode="json", exclude_none=True), status_code=exc.status_code)

    def require_caller(request: Request) -> CallerIdentity:
        return verifier.verify(parse_bearer(request.headers.get("Authorization")))

    @app.get("/v1/health")
    async def health() -> dict:
        return HealthResponse(
            timestamp=datetime.now(UTC).isoformat(), version=__version__
        ).to_wire()

    @app.post("/v1/index/check")
    async def index_check(request: Request, caller: CallerIdentity = Depends(require_caller)) -> dict:
        body = parse_request(RootCheckRequest, await read_json(request))
        return (await service.check_root(caller, body)).to_wire()

    @app.post("/v1/index/sync")
    async def index_sync(request: Request, caller: CallerIdentity = Depends(require_caller)) -> dict:
        body = parse_sync_request(await read_json(request))
        if isinstance(body, Phase1Request):
            return (await service.phase1(caller, body)).to_wire()
        return (await service.phase2(caller, body)).to_wire()

    @app.post("/v1/index/init")
    async def index_init(request: Request, caller: CallerIdentity = Depends(require_caller)) -> dict:
        body = parse_request(InitRequest, await read_json(request))
        return (await service.init(caller, body)).to_wire()

    @app.post("/v1/search")
    async def search(request: Request, caller: CallerIdentity = Depends(require_caller)) -> dict:
        body = parse_request(SearchRequest, await read_json(request))
        return (await service.search(caller, body)).to_wire()

    return app


def create_store(settings: ServerSettings) -> KVStore:
    """KV backend selected by settings. Not opened yet."""
    if settings.store == "lance":
        return LanceKVStore(Path(settings.store_path), compact_every=settings.store_compact_every)
    return MemoryKVStore()


def create_index(settings: ServerSettings) -> VectorIndex:
    """Vector index next to the KV store. Not opened yet."""
    if settings.store == "lance":
        return LanceVectorIndex(
            Path(settings.store_path),
            dimensions=settings.embedding_dimensions,
            compact_every=settings.store_compact_every,
        )
    return MemoryVectorIndex()


def build_service(settings: ServerSettings, store: KVStore, index: VectorIndex) -> SyncService:
    processor = ChunkProcessor.from_settings(settings)
    return SyncService(store, settings=settings, processor=processor, index=index)


def build_app(settings: ServerSettings, store: KVStore, index: VectorIndex) -> FastAPI:
    """Wire service, processor and verifier from settings."""
    return create_app(
        build_service(settings, store, index), StaticTokenVerifier(settings.token_prefix)
    )
