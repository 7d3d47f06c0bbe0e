"""
REST API for the Object Store

Design Decision: API Framework
==============================

Options Considered:
1. FastAPI - Async, auto-docs, pydantic models
2. aiohttp.web - Already a dependency, but no schema/docs story
3. Flask - Sync-focused, would need a thread per transfer

Decision: FastAPI
- The store is async end to end
- Response models double as documentation at /docs

API Design:
- GET  /health                      liveness + channel
- GET  /files                       catalogue (newest first, cursor paging)
- POST /files                       upload a file, returns its reference
- GET  /files/{message_id}          manifest summary
- GET  /files/{message_id}/content  download the file
Message ids refer to the store's channel.
"""

import logging
import shutil
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

import aiofiles
from fastapi import FastAPI, File, Query, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel
from starlette.background import BackgroundTask

from ..errors import (
    ConfigError, DistoreError, DownloadFailed, IntegrityError, ManifestError,
    ManifestTooLarge, NotFound, PayloadTooLarge, TransportError, UploadFailed,
)
from ..store import ObjectStore

logger = logging.getLogger(__name__)


# === Pydantic Models ===

class HealthStatus(BaseModel):
    status: str
    channel: str


class FileInfo(BaseModel):
    """A stored file in the catalogue."""
    root: str
    file_name: str
    total_size: int
    chunk_count: int
    published_at: str
    whole_file_hash: str
    cursor: str


class ManifestInfo(BaseModel):
    """Manifest summary of a stored file."""
    reference: str
    name: str
    size: int
    chunk_size: int
    chunk_count: int
    sha256: str
    created_at: float
    format_version: int


class UploadResult(BaseModel):
    reference: str
    name: str
    size: int


STATUS_BY_ERROR = [
    (NotFound, 404),
    (ConfigError, 400),
    (ManifestError, 422),
    (PayloadTooLarge, 413),
    (ManifestTooLarge, 413),
    (IntegrityError, 502),
    (UploadFailed, 503),
    (DownloadFailed, 503),
    (TransportError, 503),
]


def status_for(error: DistoreError) -> int:
    for error_type, status in STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status
    return 500


# === API Creation ===

def create_app(store: ObjectStore) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        store: ObjectStore the API serves
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"API server starting for channel {store.channel}")
        yield
        await store.close()
        logger.info("API server stopped")

    app = FastAPI(
        title="Distore API",
        description="Files stored as chunked attachments in a chat channel",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.exception_handler(DistoreError)
    async def handle_store_error(request: Request, exc: DistoreError):
        body = {'error': exc.label, 'detail': exc.message}
        if isinstance(exc, (UploadFailed, DownloadFailed)):
            body['retried'] = exc.retried
        return JSONResponse(status_code=status_for(exc), content=body)

    @app.get("/health", response_model=HealthStatus)
    async def health():
        return HealthStatus(status="ok", channel=store.channel)

    @app.get("/files", response_model=List[FileInfo])
    async def list_files(limit: int = Query(50, ge=1, le=1000),
                         cursor: Optional[str] = None):
        entries = await store.list_files(limit=limit, cursor=cursor)
        return [FileInfo(**e.to_dict()) for e in entries]

    @app.get("/files/{message_id}", response_model=ManifestInfo)
    async def get_manifest(message_id: str):
        root = store.parse_reference(message_id)
        manifest = await store.fetch_manifest(root)
        return ManifestInfo(
            reference=str(root),
            name=manifest.file_name,
            size=manifest.total_size,
            chunk_size=manifest.chunk_size,
            chunk_count=manifest.chunk_count,
            sha256=manifest.whole_file_hash,
            created_at=manifest.created_at,
            format_version=manifest.format_version,
        )

    @app.get("/files/{message_id}/content")
    async def get_content(message_id: str):
        root = store.parse_reference(message_id)
        manifest = await store.fetch_manifest(root)
        work_dir = Path(tempfile.mkdtemp(prefix="distore-"))
        try:
            target = work_dir / Path(manifest.file_name).name
            await store.downloader.restore(manifest, target)
        except BaseException:
            shutil.rmtree(work_dir, ignore_errors=True)
            raise

        return FileResponse(
            target,
            filename=manifest.file_name,
            media_type="application/octet-stream",
            background=BackgroundTask(shutil.rmtree, work_dir, ignore_errors=True),
        )

    @app.post("/files", response_model=UploadResult, status_code=201)
    async def upload_file(file: UploadFile = File(...)):
        work_dir = Path(tempfile.mkdtemp(prefix="distore-"))
        try:
            name = Path(file.filename or "upload.bin").name
            local_path = work_dir / name
            async with aiofiles.open(local_path, 'wb') as out:
                while True:
                    data = await file.read(1024 * 1024)
                    if not data:
                        break
                    await out.write(data)

            root = await store.upload(local_path)
            return UploadResult(reference=str(root), name=name,
                                size=local_path.stat().st_size)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

    return app


async def run_api_server(store: ObjectStore, host: str = "127.0.0.1", port: int = 8080):
    """Run the API server inside an existing event loop."""
    import uvicorn

    config = uvicorn.Config(create_app(store), host=host, port=port, log_level="info")
    server = uvicorn.Server(config)
    await server.serve()
