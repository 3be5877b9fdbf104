import io

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from app import create_app
from config import Settings
from utils.cache import ExpiringCache

TOKEN = 'test-token'


def png_bytes(size=(64, 48), color=(200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new('RGB', size, color).save(buf, format='PNG')
    return buf.getvalue()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        UPLOAD_DIR=str(tmp_path / 'uploads'),
        CACHE_DIR=str(tmp_path / 'cache'),
        API_TOKEN=TOKEN,
        PUBLIC_BASE_URL='https://cdn.example.test',
        MAX_UPLOAD_BYTES=1 << 20,
        MAX_RESIZE_DIMENSION=1000,
    )


@pytest.fixture
def cache():
    c = ExpiringCache(default_ttl=60, sweep_interval=0)
    yield c
    c.stop()


@pytest.fixture
def client(settings, cache):
    with TestClient(create_app(settings, cache=cache)) as c:
        yield c


@pytest.fixture
def uploaded(client):
    """Upload a 64x48 PNG and return its stored name."""
    r = client.post(
        '/api/upload',
        headers={'X-API-Token': TOKEN},
        files={'image': ('cat.png', png_bytes(), 'image/png')},
    )
    assert r.status_code == 200, r.text
    return r.json()['filename'].rsplit('/', 1)[-1]
