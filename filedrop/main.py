"""
Main FastAPI application for the filedrop upload service.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import aiofiles.os
from fastapi import APIRouter, FastAPI, Header, HTTPException, Request
from fastapi.responses import FileResponse, JSONResponse

from filedrop.batches import BatchTracker
from filedrop.config import AppConfig, config
from filedrop.engine import UploadEngine
from filedrop.errors import UploadError
from filedrop.files import FileCatalog
from filedrop.janitor import Janitor
from filedrop.models import (
    CancelResponse,
    ChunkProgress,
    DeleteFileResponse,
    FileListResponse,
    InitUploadRequest,
    InitUploadResponse,
    StoredFile,
)
from filedrop.notifications import Notifier
from filedrop.paths import PathResolver
from filedrop.store import SessionStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/upload", tags=["upload"])
files_router = APIRouter(prefix="/api/files", tags=["files"])


def get_engine(request: Request) -> UploadEngine:
    return request.app.state.engine


def get_catalog(request: Request) -> FileCatalog:
    return request.app.state.files


@router.post("/init", response_model=InitUploadResponse)
async def init_upload(
    body: InitUploadRequest,
    request: Request,
    x_batch_id: Optional[str] = Header(default=None),
):
    """Declare a new upload and receive its handle."""
    try:
        upload_id = await get_engine(request).init_upload(body.filename, body.file_size, x_batch_id)
    except UploadError:
        raise
    except Exception as e:
        logger.error(f"Upload initialization failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to initialize upload")

    return InitUploadResponse(upload_id=upload_id)


@router.post("/chunk/{upload_id}", response_model=ChunkProgress)
async def upload_chunk(upload_id: str, request: Request):
    """Append the raw request body to the upload."""
    data = await request.body()
    try:
        return await get_engine(request).append_chunk(upload_id, data)
    except UploadError:
        raise
    except Exception as e:
        logger.error(f"Chunk upload failed for {upload_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to process chunk")


@router.post("/cancel/{upload_id}", response_model=CancelResponse)
async def cancel_upload(upload_id: str, request: Request):
    """Cancel an upload. Always succeeds, cancelling is best-effort."""
    try:
        await get_engine(request).cancel_upload(upload_id)
    except Exception as e:
        logger.error(f"Error during upload cancellation for {upload_id}: {e}")
    return CancelResponse()


@files_router.get("/", response_model=FileListResponse)
async def list_files(request: Request):
    """List finished uploads, newest first."""
    try:
        return await get_catalog(request).list_files()
    except Exception as e:
        logger.error(f"Failed to list files: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to list files")


@files_router.get("/{filename:path}/info", response_model=StoredFile)
async def file_info(filename: str, request: Request):
    return await get_catalog(request).file_info(filename)


@files_router.get("/{filename:path}/download")
async def download_file(filename: str, request: Request):
    """Send a finished upload as an attachment."""
    path = await get_catalog(request).resolve_file(filename)
    logger.info(f"File download started: {filename}")
    return FileResponse(path, filename=path.name, media_type="application/octet-stream")


@files_router.delete("/{filename:path}", response_model=DeleteFileResponse)
async def delete_file(filename: str, request: Request):
    await get_catalog(request).delete_file(filename)
    return DeleteFileResponse()


def create_app(settings: AppConfig = config) -> FastAPI:
    """Build the application and the components it owns."""
    store = SessionStore(settings.metadata_dir)
    batches = BatchTracker(settings.batch_timeout, settings.batch_cleanup_interval)
    resolver = PathResolver(settings.upload_dir, batches)
    notifier = Notifier(settings)
    engine = UploadEngine(store, resolver, batches, notifier, settings)
    janitor = Janitor(store, settings.upload_dir, settings.upload_timeout, settings.cleanup_interval, batches)
    files = FileCatalog(settings.upload_dir, settings.metadata_dir)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting filedrop upload service")

        await aiofiles.os.makedirs(settings.upload_dir, exist_ok=True)
        await store.connect()

        # Finish uploads that were interrupted while finalizing
        recovered = await engine.recover_sessions()
        if recovered > 0:
            logger.warning(f"Found and recovered {recovered} uploads interrupted by previous shutdown")

        await janitor.start()
        if not settings.disable_batch_cleanup:
            await batches.start()

        logger.info(f"Upload directory: {resolver.upload_dir}")
        logger.info(f"Maximum file size set to: {settings.max_file_size / (1024 * 1024):.0f}MB")
        if settings.extension_allow_list:
            logger.info(f"Allowed extensions: {', '.join(settings.extension_allow_list)}")
        if notifier.enabled:
            logger.info("Apprise notifications enabled")

        yield

        logger.info("Shutting down filedrop upload service")
        await batches.stop()
        await janitor.stop()
        await notifier.drain()

    app = FastAPI(
        title="filedrop",
        description="Resumable chunked file upload service",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.store = store
    app.state.batches = batches
    app.state.janitor = janitor
    app.state.files = files

    @app.exception_handler(UploadError)
    async def upload_error_handler(request: Request, exc: UploadError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {"message": "filedrop upload service"}

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    app.include_router(router)
    app.include_router(files_router)
    return app


app = create_app()
