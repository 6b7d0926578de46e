"""Tests for the chunked upload HTTP API."""

import os
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from app.core.errors import DependencyUnavailableError
from app.main import create_app


def upload_chunk(client, file_id, number, total, content):
    return client.post(
        '/upload/check',
        headers={
            'X-File-Id': file_id,
            'X-Chunk-Number': str(number),
            'X-Total-Chunks': str(total),
        },
        files={'file': ('blob', content)},
    )


def complete(client, file_id, file_name, total, **extra_headers):
    headers = {
        'X-File-Id': file_id,
        'X-File-Name': file_name,
        'X-Total-Chunks': str(total),
    }
    headers.update(extra_headers)
    return client.post('/upload/complete', headers=headers)


def status_of(client, file_id):
    response = client.get('/upload/status', headers={'X-File-Id': file_id})
    assert response.status_code == 200
    return response.json()['uploaded']


def chunk_files(directory):
    return sorted(name for name in os.listdir(directory) if name.endswith('.chunk'))


def test_ping(client):
    response = client.get('/ping')
    assert response.status_code == 200
    assert response.text == 'pong'


def test_upload_chunk_success(client, settings):
    response = upload_chunk(client, 'abc', 1, 2, b'hello')

    assert response.status_code == 200
    assert response.json() == {'message': 'Chunk uploaded successfully'}
    with open(os.path.join(settings.CHUNK_DIR, 'abc_1.chunk'), 'rb') as f:
        assert f.read() == b'hello'


@pytest.mark.parametrize('headers', [
    {'X-Chunk-Number': '1', 'X-Total-Chunks': '1'},
    {'X-File-Id': 'abc', 'X-Chunk-Number': '0', 'X-Total-Chunks': '1'},
    {'X-File-Id': 'abc', 'X-Chunk-Number': 'x', 'X-Total-Chunks': '1'},
    {'X-File-Id': 'abc', 'X-Chunk-Number': '1', 'X-Total-Chunks': '0'},
    {'X-File-Id': 'abc', 'X-Chunk-Number': '3', 'X-Total-Chunks': '2'},
    {'X-File-Id': '../etc', 'X-Chunk-Number': '1', 'X-Total-Chunks': '1'},
])
def test_upload_chunk_invalid_headers(client, settings, headers):
    response = client.post('/upload/check', headers=headers, files={'file': ('blob', b'x')})

    assert response.status_code == 400
    assert response.json()['code'] == 'INVALID_INPUT'
    assert not os.path.exists(settings.CHUNK_DIR) or os.listdir(settings.CHUNK_DIR) == []


def test_upload_chunk_missing_file(client):
    response = client.post('/upload/check', headers={
        'X-File-Id': 'abc', 'X-Chunk-Number': '1', 'X-Total-Chunks': '1',
    })

    assert response.status_code == 400
    assert response.json() == {'error': 'File is required', 'code': 'INVALID_INPUT'}
    assert status_of(client, 'abc') == []


def test_status_requires_file_id(client):
    response = client.get('/upload/status')

    assert response.status_code == 400
    assert response.json()['code'] == 'INVALID_INPUT'


def test_status_of_unknown_session_is_empty(client):
    response = client.get('/upload/status', headers={'X-File-Id': 'never-seen'})

    assert response.status_code == 200
    assert response.json() == {'uploaded': [], 'total_received': 0}


def test_status_reports_every_uploaded_chunk(client):
    for number in (4, 2, 5, 1, 3):
        assert upload_chunk(client, 'sess', number, 5, b'x').status_code == 200

    assert sorted(status_of(client, 'sess')) == [1, 2, 3, 4, 5]


def test_merge_follows_chunk_numbers_not_upload_order(client, settings):
    upload_chunk(client, 'sess', 3, 3, b'A')
    upload_chunk(client, 'sess', 1, 3, b'B')
    upload_chunk(client, 'sess', 2, 3, b'C')

    response = complete(client, 'sess', 'out.bin', 3)

    assert response.status_code == 200
    body = response.json()
    assert body['message'] == 'File merged successfully'
    assert body['path'] == os.path.join(settings.COMPLETED_DIR, 'out.bin')
    with open(body['path'], 'rb') as f:
        assert f.read() == b'BCA'


def test_reupload_replaces_chunk_content(client, settings):
    upload_chunk(client, 'sess', 1, 2, b'old')
    upload_chunk(client, 'sess', 2, 2, b'-tail')
    upload_chunk(client, 'sess', 1, 2, b'new')

    assert sorted(status_of(client, 'sess')) == [1, 2]

    response = complete(client, 'sess', 'out.bin', 2)
    with open(response.json()['path'], 'rb') as f:
        assert f.read() == b'new-tail'


def test_complete_with_missing_chunk_changes_nothing(client, settings):
    upload_chunk(client, 'sess', 1, 3, b'A')
    upload_chunk(client, 'sess', 3, 3, b'C')

    response = complete(client, 'sess', 'out.bin', 3)

    assert response.status_code == 400
    assert response.json()['code'] == 'INCOMPLETE_UPLOAD'
    assert 'missing: [2]' in response.json()['error']
    assert not os.path.exists(os.path.join(settings.COMPLETED_DIR, 'out.bin'))
    assert chunk_files(settings.CHUNK_DIR) == ['sess_1.chunk', 'sess_3.chunk']
    assert sorted(status_of(client, 'sess')) == [1, 3]


def test_complete_rejects_wrong_chunk_numbers_with_right_count(client):
    upload_chunk(client, 'sess', 1, 4, b'A')
    upload_chunk(client, 'sess', 2, 4, b'B')
    upload_chunk(client, 'sess', 4, 4, b'D')

    response = complete(client, 'sess', 'out.bin', 3)

    assert response.status_code == 400
    assert response.json()['code'] == 'INCOMPLETE_UPLOAD'
    assert 'unexpected: [4]' in response.json()['error']


def test_complete_cleans_up_session(client, settings):
    upload_chunk(client, 'sess', 1, 2, b'A')
    upload_chunk(client, 'sess', 2, 2, b'B')

    assert complete(client, 'sess', 'out.bin', 2).status_code == 200

    assert chunk_files(settings.CHUNK_DIR) == []
    assert status_of(client, 'sess') == []


def test_complete_is_retry_safe_after_io_failure(client, settings):
    upload_chunk(client, 'sess', 1, 3, b'A')
    upload_chunk(client, 'sess', 2, 3, b'B')
    upload_chunk(client, 'sess', 3, 3, b'C')
    os.remove(os.path.join(settings.CHUNK_DIR, 'sess_2.chunk'))

    failed = complete(client, 'sess', 'out.bin', 3)

    assert failed.status_code == 500
    assert failed.json()['code'] == 'IO_FAILURE'
    assert sorted(status_of(client, 'sess')) == [1, 2, 3]
    assert chunk_files(settings.CHUNK_DIR) == ['sess_1.chunk', 'sess_3.chunk']

    upload_chunk(client, 'sess', 2, 3, b'B')
    retried = complete(client, 'sess', 'out.bin', 3)

    assert retried.status_code == 200
    with open(retried.json()['path'], 'rb') as f:
        assert f.read() == b'ABC'


def test_complete_strips_directories_from_file_name(client, settings):
    upload_chunk(client, 'sess', 1, 1, b'A')

    response = complete(client, 'sess', '../../escape.txt', 1)

    assert response.status_code == 200
    assert response.json()['path'] == os.path.join(settings.COMPLETED_DIR, 'escape.txt')


def test_complete_requires_headers(client):
    response = client.post('/upload/complete', headers={'X-File-Id': 'sess'})

    assert response.status_code == 400
    assert response.json()['code'] == 'INVALID_INPUT'


def test_background_completion(client, settings):
    upload_chunk(client, 'sess', 2, 2, b'B')
    upload_chunk(client, 'sess', 1, 2, b'A')

    response = complete(client, 'sess', 'bg.bin', 2, **{'X-Background': 'true'})

    assert response.status_code == 202
    assert response.json() == {'message': 'File merge scheduled', 'status': 'pending'}

    job = client.get('/upload/complete/status', headers={'X-File-Id': 'sess'}).json()
    assert job['state'] == 'completed'
    assert job['path'] == os.path.join(settings.COMPLETED_DIR, 'bg.bin')
    with open(job['path'], 'rb') as f:
        assert f.read() == b'AB'


def test_background_completion_rejects_incomplete_upload(client):
    upload_chunk(client, 'sess', 1, 2, b'A')

    response = complete(client, 'sess', 'bg.bin', 2, **{'X-Background': 'true'})

    assert response.status_code == 400
    job = client.get('/upload/complete/status', headers={'X-File-Id': 'sess'}).json()
    assert job['state'] == 'unknown'


def test_background_completion_is_not_scheduled_twice(client, settings, monkeypatch):
    from app.services.upload_service import UploadService

    runs = []

    async def hold_merge(self, file_id, file_name, total_chunks):
        runs.append(file_id)

    # The first merge stays pending while the second request arrives
    monkeypatch.setattr(UploadService, 'run_completion', hold_merge)
    upload_chunk(client, 'sess', 1, 1, b'A')

    first = complete(client, 'sess', 'bg.bin', 1, **{'X-Background': 'true'})
    second = complete(client, 'sess', 'bg.bin', 1, **{'X-Background': 'true'})

    assert first.status_code == 202
    assert first.json() == {'message': 'File merge scheduled', 'status': 'pending'}
    assert second.status_code == 202
    assert second.json() == {'message': 'File merge already in progress', 'status': 'pending'}
    assert runs == ['sess']


def test_single_shot_upload(client, settings):
    response = client.post('/upload', files={'file': ('notes.txt', b'whole file')})

    assert response.status_code == 200
    assert response.json() == {'message': "'notes.txt' uploaded!", 'path': '/media/notes.txt'}
    with open(os.path.join(settings.UPLOAD_DIR, 'notes.txt'), 'rb') as f:
        assert f.read() == b'whole file'


def test_single_shot_upload_is_published_readable(client, settings):
    client.post('/upload', files={'file': ('notes.txt', b'whole file')})

    mode = os.stat(os.path.join(settings.UPLOAD_DIR, 'notes.txt')).st_mode & 0o777
    assert mode == 0o644


def test_single_shot_write_failure_is_rejected(client, settings, monkeypatch):
    from app.services.storage import internal

    def broken_replace(src, dst):
        raise OSError('disk full')

    monkeypatch.setattr(internal.os, 'replace', broken_replace)

    response = client.post('/upload', files={'file': ('notes.txt', b'whole file')})

    assert response.status_code == 400
    assert response.json() == {'error': "'notes.txt' upload failed", 'code': 'INVALID_INPUT'}
    assert not os.path.exists(os.path.join(settings.UPLOAD_DIR, 'notes.txt'))


def test_single_shot_upload_without_file(client):
    response = client.post('/upload')

    assert response.status_code == 400
    assert response.json()['code'] == 'INVALID_INPUT'


def test_startup_fails_when_redis_is_unreachable(settings, storage):
    redis_client = AsyncMock()
    redis_client.ping.side_effect = RedisConnectionError('refused')
    app = create_app(settings, redis_client=redis_client, storage=storage)

    with pytest.raises(DependencyUnavailableError):
        with TestClient(app):
            pass


def test_store_failure_is_reported_as_unavailable(settings, storage):
    redis_client = AsyncMock()
    redis_client.smembers.side_effect = RedisConnectionError('gone')
    app = create_app(settings, redis_client=redis_client, storage=storage)

    with TestClient(app) as client:
        response = client.get('/upload/status', headers={'X-File-Id': 'sess'})

    assert response.status_code == 500
    assert response.json()['code'] == 'DEPENDENCY_UNAVAILABLE'
