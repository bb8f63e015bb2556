"""
Pytest configuration and fixtures for bchan tests
"""
import dataclasses
import datetime
import struct
import zlib
from io import BytesIO
from urllib.parse import quote

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from bchan.config import Settings
from bchan.db.database import create_tables, setup_database
from bchan.errors import StorageError
from bchan.main import create_app
from bchan.services.upload import UploadPipeline
from bchan.util.tripcode import Tripcodes

PUBLIC_URL = "http://storage.test"


class FakeStorage:
    """In-memory stand-in for S3Service with switches for failure injection"""

    def __init__(self):
        self.buckets = {}
        self.fail_uploads = set()
        self.fail_deletes = set()
        self.fail_listing = set()
        self.calls = []

    def objects(self, bucket):
        return self.buckets.setdefault(bucket, {})

    async def upload(self, bucket, key, data, content_type):
        self.calls.append(("upload", bucket, key))
        if bucket in self.fail_uploads:
            raise StorageError("Upload failed")
        if key in self.objects(bucket):
            raise StorageError("Upload failed")
        self.objects(bucket)[key] = {
            "data": data,
            "content_type": content_type,
            "last_modified": datetime.datetime.now(datetime.timezone.utc),
        }
        return key

    def public_url_for(self, bucket, key):
        return f"{PUBLIC_URL}/{bucket}/{quote(key)}"

    async def delete(self, bucket, key):
        self.calls.append(("delete", bucket, key))
        if bucket in self.fail_deletes:
            raise StorageError("Deletion failed")
        self.objects(bucket).pop(key, None)

    async def list_objects(self, bucket):
        if bucket in self.fail_listing:
            raise StorageError(f"Listing {bucket} failed")
        return [(key, meta["last_modified"]) for key, meta in self.objects(bucket).items()]

    async def check_connection(self, *buckets):
        return True

    def put(self, bucket, key, data=b"x", age=datetime.timedelta(days=1)):
        """Place an object directly, backdated so cleanup treats it as settled"""
        self.objects(bucket)[key] = {
            "data": data,
            "content_type": "image/jpeg",
            "last_modified": datetime.datetime.now(datetime.timezone.utc) - age,
        }


class FakeRedis:
    """Just the Redis commands the rate limiter and the cache use"""

    def __init__(self):
        self.store = {}
        self.expiry = {}

    async def ping(self):
        return True

    async def incr(self, key):
        self.store[key] = int(self.store.get(key, 0)) + 1
        return self.store[key]

    async def expire(self, key, seconds):
        self.expiry[key] = seconds
        return True

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self.store[key] = value
        if ex:
            self.expiry[key] = ex
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed

    async def aclose(self):
        pass


def make_image(width=400, height=300, fmt="JPEG", mode="RGB", color="red"):
    buffer = BytesIO()
    Image.new(mode, (width, height), color).save(buffer, format=fmt)
    return buffer.getvalue()


def make_png_header(width, height):
    """A grayscale PNG declaring huge dimensions in a few bytes of header"""
    def chunk(tag, data):
        return struct.pack(">I", len(data)) + tag + data + struct.pack(">I", zlib.crc32(tag + data) & 0xffffffff)

    header = struct.pack(">IIBBBBB", width, height, 8, 0, 0, 0, 0)
    return b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", header) + chunk(b"IDAT", zlib.compress(b"")) + chunk(b"IEND", b"")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        create_tables=True,
        s3_public_url=PUBLIC_URL,
        tripcode_salt="test-salt",
        rate_limit_max_requests=1000,
        log_file=None,
    )


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def pipeline(storage, settings):
    return UploadPipeline(storage, settings.images_bucket, settings.thumbnails_bucket)


@pytest.fixture
def tripcodes(settings):
    return Tripcodes(settings.tripcode_salt)


@pytest.fixture
async def sessionmaker(settings):
    engine, sessionmaker = setup_database(settings.database_url)
    await create_tables(engine)
    yield sessionmaker
    await engine.dispose()


@pytest.fixture
def jpeg_bytes():
    return make_image()


@pytest.fixture
def make_client(settings, storage, fake_redis):
    """Build a TestClient, optionally with overridden settings"""
    clients = []

    def _make(**overrides):
        app_settings = dataclasses.replace(settings, **overrides)
        engine, sessionmaker = setup_database(app_settings.database_url)
        app = create_app(app_settings, storage=storage, redis=fake_redis, engine=engine, sessionmaker=sessionmaker)
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    return make_client()
