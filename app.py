import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse
from pydantic import BaseModel
from starlette.datastructures import UploadFile

from config import Settings, settings as default_settings
from images import ImageNotFoundError, ImageStore, InvalidFilenameError, safe_name
from utils.cache import ExpiringCache
from utils.logger import get_logger

LOG = get_logger('app')


class UploadResponse(BaseModel):
    message: str
    filename: str


class HealthResponse(BaseModel):
    status: str
    cached_entries: int


def create_app(settings: Optional[Settings] = None, cache: Optional[ExpiringCache[str]] = None) -> FastAPI:
    """Build the API. A cache passed in is owned by the caller and not stopped on shutdown."""
    settings = settings or default_settings
    owns_cache = cache is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.store.ensure_dirs()
        if app.state.cache is None:
            app.state.cache = ExpiringCache(
                default_ttl=settings.CACHE_DEFAULT_TTL,
                sweep_interval=settings.CACHE_SWEEP_INTERVAL,
            )
        LOG.info(f'Serving uploads from {settings.UPLOAD_DIR}, variants in {settings.CACHE_DIR}')
        try:
            yield
        finally:
            if owns_cache:
                app.state.cache.stop()

    app = FastAPI(title='Image Service API', lifespan=lifespan)
    app.state.settings = settings
    app.state.store = ImageStore(settings.UPLOAD_DIR, settings.CACHE_DIR)
    app.state.cache = cache
    app.include_router(router)
    return app


# -------------------------------------------
# Dependencies
# -------------------------------------------
def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> ImageStore:
    return request.app.state.store


def get_cache(request: Request) -> ExpiringCache[str]:
    return request.app.state.cache


def require_token(
    x_api_token: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
):
    if not x_api_token:
        raise HTTPException(status_code=401, detail='API token required')
    if x_api_token != settings.API_TOKEN:
        raise HTTPException(status_code=401, detail='Invalid API token')


def checked_name(filename: str) -> str:
    try:
        return safe_name(filename)
    except InvalidFilenameError:
        raise HTTPException(status_code=400, detail='Invalid filename')


def cached_file(cache: ExpiringCache[str], key: str) -> Optional[str]:
    """Cached path for key, dropping it if the file has gone from disk."""
    path, found = cache.get(key)
    if not found:
        return None
    if not os.path.isfile(path):
        cache.delete(key)
        return None
    return path


# -------------------------------------------
# Routes
# -------------------------------------------
router = APIRouter()


@router.post('/api/upload', response_model=UploadResponse, dependencies=[Depends(require_token)])
async def upload(
    request: Request,
    settings: Settings = Depends(get_settings),
    store: ImageStore = Depends(get_store),
):
    form = await request.form()
    image = form.get('image')
    # a plain text field is as good as no image
    if not isinstance(image, UploadFile) or not image.filename:
        raise HTTPException(status_code=400, detail='No image provided')

    image.file.seek(0, os.SEEK_END)
    size = image.file.tell()
    image.file.seek(0)
    if size > settings.MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail='Image too large')

    try:
        stored = await run_in_threadpool(store.save_upload, image.file, image.filename)
    except (OSError, ValueError):
        LOG.exception('Saving upload failed')
        raise HTTPException(status_code=500, detail='Error saving image')

    LOG.info(f'Stored upload {stored} ({size} bytes)')
    return UploadResponse(
        message='Image uploaded successfully',
        filename=f"{settings.PUBLIC_BASE_URL.rstrip('/')}/api/image/{stored}",
    )


@router.get('/api/image/{filename}')
def serve_image(
    filename: str,
    store: ImageStore = Depends(get_store),
    cache: ExpiringCache[str] = Depends(get_cache),
):
    filename = checked_name(filename)
    path = cached_file(cache, filename)
    if path:
        return FileResponse(path)

    path = store.original_path(filename)
    if not os.path.isfile(path):
        raise HTTPException(status_code=404, detail='Image not found')

    cache.set(filename, path)
    return FileResponse(path)


@router.get('/api/resize/{filename}')
def resize_image(
    filename: str,
    width: Optional[int] = Query(None, ge=1),
    height: Optional[int] = Query(None, ge=1),
    settings: Settings = Depends(get_settings),
    store: ImageStore = Depends(get_store),
    cache: ExpiringCache[str] = Depends(get_cache),
):
    """Resized variant of an uploaded image. Defaults to DEFAULT_RESIZE x DEFAULT_RESIZE."""
    filename = checked_name(filename)
    width = width or settings.DEFAULT_RESIZE
    height = height or settings.DEFAULT_RESIZE
    limit = settings.MAX_RESIZE_DIMENSION
    if width > limit or height > limit:
        raise HTTPException(status_code=422, detail=f'width and height must be at most {limit}')

    cache_key = f'{filename}_{width}_{height}'
    path = cached_file(cache, cache_key)
    if path:
        return FileResponse(path)

    try:
        dst_path = store.resize(filename, width, height)
    except ImageNotFoundError:
        raise HTTPException(status_code=404, detail='Image not found')
    except (OSError, ValueError):
        LOG.exception(f'Resizing {filename} to {width}x{height} failed')
        raise HTTPException(status_code=500, detail='Error processing image')

    cache.set(cache_key, dst_path)
    return FileResponse(dst_path)


@router.get('/health', response_model=HealthResponse)
def health(cache: ExpiringCache[str] = Depends(get_cache)):
    return HealthResponse(status='ok', cached_entries=len(cache))


app = create_app()


if __name__ == '__main__':
    import uvicorn

    uvicorn.run(app, host='0.0.0.0', port=default_settings.PORT)
