"""Shared pytest fixtures for all tests."""

import fakeredis
import pytest
from fastapi.testclient import TestClient

from app.core.config import Settings
from app.main import create_app
from app.services.chunk_index import ChunkIndex
from app.services.storage.factory import build_storage
from app.services.upload_service import UploadService


@pytest.fixture
def settings(tmp_path):
    """
    Settings pointing every storage area at a temporary directory.

    Args:
        tmp_path: pytest tmp_path fixture

    Returns:
        Settings with the sweeper disabled
    """
    return Settings(
        _env_file=None,
        UPLOAD_DIR=str(tmp_path / 'uploads'),
        CHUNK_DIR=str(tmp_path / 'uploads' / 'chunks'),
        COMPLETED_DIR=str(tmp_path / 'uploads' / 'completed'),
        CLEANUP_INTERVAL_SECONDS=0,
        SESSION_TTL_SECONDS=3600,
    )


@pytest.fixture
def redis_client():
    """Fresh in-memory Redis per test."""
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def storage(settings):
    storage = build_storage(settings)
    yield storage
    storage.close()


@pytest.fixture
def chunk_index(redis_client, settings):
    return ChunkIndex(
        redis_client,
        key_prefix=settings.CHUNK_INDEX_PREFIX,
        session_prefix=settings.SESSION_PREFIX,
        merge_job_prefix=settings.MERGE_JOB_PREFIX,
        session_ttl=settings.SESSION_TTL_SECONDS,
    )


@pytest.fixture
def upload_service(chunk_index, storage, settings):
    return UploadService(chunk_index, storage, completed_dir=settings.COMPLETED_DIR)


@pytest.fixture
def client(settings, redis_client, storage):
    """FastAPI test client running the app lifespan against fake Redis."""
    app = create_app(settings, redis_client=redis_client, storage=storage)
    with TestClient(app) as test_client:
        yield test_client
