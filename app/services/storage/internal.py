import os
import re
import shutil
import asyncio
import logging
import tempfile
import concurrent.futures
from typing import BinaryIO, Dict, List, Optional
from .base import BaseStorage
from app.core.errors import StorageIOError

logger = logging.getLogger(__name__)

CHUNK_FILE_RE = re.compile(r"^(?P<session_id>.+)_(?P<chunk_number>\d+)\.chunk$")
TEMP_SUFFIX = ".tmp"
STAGING_DIR_NAME = ".staging"
PUBLISHED_FILE_MODE = 0o644


def chunk_file_name(upload_session_id: str, chunk_number: int) -> str:
    return f"{upload_session_id}_{chunk_number}.chunk"


class InternalStorage(BaseStorage):
    """
    Local filesystem blob store.

    Chunk blobs live flat in ``chunk_dir`` as ``<session id>_<n>.chunk``.
    Every write goes to a uniquely named temporary file in ``<chunk_dir>/.staging``
    and is published with ``os.replace``, so a reader only ever sees a
    complete blob from a single writer. All storage areas must share one
    filesystem for the rename to be atomic.
    """

    def __init__(
        self,
        chunk_dir: str,
        completed_dir: str,
        upload_dir: str,
        buffer_size: int = 1024 * 1024,
        max_workers: int = 4,
    ):
        self.chunk_dir = chunk_dir
        self.completed_dir = completed_dir
        self.upload_dir = upload_dir
        self.buffer_size = buffer_size
        self.staging_dir = os.path.join(chunk_dir, STAGING_DIR_NAME)
        # Blocking file I/O runs here, off the event loop
        self.thread_pool = concurrent.futures.ThreadPoolExecutor(max_workers=max_workers)

    def close(self) -> None:
        self.thread_pool.shutdown(wait=True)

    def chunk_path(self, upload_session_id: str, chunk_number: int) -> str:
        return os.path.join(self.chunk_dir, chunk_file_name(upload_session_id, chunk_number))

    async def _run(self, func, *args):
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(self.thread_pool, func, *args)

    def _publish_sync(self, target_path: str, file_data: BinaryIO) -> int:
        """Stream ``file_data`` into a staging file and rename it onto ``target_path``."""
        os.makedirs(os.path.dirname(target_path), exist_ok=True)
        os.makedirs(self.staging_dir, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=self.staging_dir,
            prefix=f".{os.path.basename(target_path)}.",
            suffix=TEMP_SUFFIX,
        )
        try:
            with os.fdopen(fd, "wb") as out:
                shutil.copyfileobj(file_data, out, self.buffer_size)
                out.flush()
                os.fsync(out.fileno())
                size = out.tell()
            # mkstemp creates the file owner-only
            os.chmod(tmp_path, PUBLISHED_FILE_MODE)
            os.replace(tmp_path, target_path)
            return size
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def _save_chunk_sync(self, upload_session_id: str, chunk_number: int, chunk_data: BinaryIO) -> str:
        chunk_path = self.chunk_path(upload_session_id, chunk_number)
        try:
            size = self._publish_sync(chunk_path, chunk_data)
        except OSError as e:
            logger.error(f"Error saving chunk {chunk_number} for session {upload_session_id}: {str(e)}")
            raise StorageIOError("Failed to save chunk") from e

        logger.debug(f"Chunk saved successfully: {chunk_path} ({size} bytes)")
        return chunk_path

    async def save_chunk(self, upload_session_id: str, chunk_number: int, chunk_data: BinaryIO) -> str:
        logger.debug(f"Saving chunk {chunk_number} for session {upload_session_id}")
        return await self._run(self._save_chunk_sync, upload_session_id, chunk_number, chunk_data)

    def _merge_files_sync(self, upload_session_id: str, total_chunks: int, merged_file_path: str) -> dict:
        """Concatenate chunks 1..total_chunks, in that order, into ``merged_file_path``."""
        os.makedirs(os.path.dirname(merged_file_path), exist_ok=True)

        logger.info(f"Starting merge of {total_chunks} chunks for session {upload_session_id} to {merged_file_path}")
        total_size = 0

        try:
            with open(merged_file_path, "wb") as merged:
                for i in range(1, total_chunks + 1):
                    chunk_path = self.chunk_path(upload_session_id, i)
                    with open(chunk_path, "rb") as chunk_file:
                        shutil.copyfileobj(chunk_file, merged, self.buffer_size)
                        total_size += chunk_file.tell()
                    logger.debug(f"Chunk {i}/{total_chunks} merged")
        except OSError as e:
            # Blobs stay where they are so the completion can be retried
            logger.error(f"Error merging chunks for session {upload_session_id}: {str(e)}")
            raise StorageIOError("Failed to merge chunks") from e

        logger.info(
            f"Merge completed:\n"
            f"- Chunks merged: {total_chunks}\n"
            f"- Total size: {total_size/1024/1024:.2f}MB\n"
            f"- Output file: {merged_file_path}"
        )

        return {
            "chunks_merged": total_chunks,
            "total_size": total_size,
            "path": merged_file_path,
        }

    async def merge_chunks(self, upload_session_id: str, total_chunks: int, merged_file_path: str) -> dict:
        return await self._run(self._merge_files_sync, upload_session_id, total_chunks, merged_file_path)

    def _cleanup_session_sync(self, upload_session_id: str, total_chunks: int) -> dict:
        files_removed = 0
        total_size = 0
        errors = []
        for i in range(1, total_chunks + 1):
            chunk_path = self.chunk_path(upload_session_id, i)
            try:
                size = os.path.getsize(chunk_path)
                os.remove(chunk_path)
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.error(f"Error removing chunk {chunk_path}: {str(e)}")
                errors.append(str(e))
                continue
            files_removed += 1
            total_size += size

        logger.info(
            f"Cleaned up chunks for session {upload_session_id}:\n"
            f"- Files: {files_removed}\n"
            f"- Total size: {total_size/1024/1024:.2f}MB"
        )
        return {
            "files_removed": files_removed,
            "total_size": total_size,
            "success": not errors,
            "errors": errors,
        }

    async def cleanup_session(self, upload_session_id: str, total_chunks: int) -> dict:
        return await self._run(self._cleanup_session_sync, upload_session_id, total_chunks)

    def _save_file_sync(self, file_name: str, file_data: BinaryIO) -> str:
        file_path = os.path.join(self.upload_dir, file_name)
        try:
            size = self._publish_sync(file_path, file_data)
        except OSError as e:
            logger.error(f"Error saving file {file_name}: {str(e)}")
            raise StorageIOError(f"'{file_name}' upload failed") from e
        logger.info(f"File saved: {file_path} ({size} bytes)")
        return file_path

    async def save_file(self, file_name: str, file_data: BinaryIO) -> str:
        return await self._run(self._save_file_sync, file_name, file_data)

    def _session_blobs(self) -> Dict[str, List[str]]:
        sessions: Dict[str, List[str]] = {}
        try:
            names = os.listdir(self.chunk_dir)
        except FileNotFoundError:
            return sessions
        for name in names:
            match = CHUNK_FILE_RE.match(name)
            if match:
                sessions.setdefault(match.group("session_id"), []).append(os.path.join(self.chunk_dir, name))
        return sessions

    async def list_sessions(self) -> List[str]:
        sessions = await self._run(self._session_blobs)
        return sorted(sessions)

    def _purge_session_sync(self, upload_session_id: str, older_than: float) -> int:
        paths = self._session_blobs().get(upload_session_id, [])
        if not paths:
            return 0
        newest = _newest_mtime(paths)
        if newest is None or newest >= older_than:
            return 0
        removed = 0
        for path in paths:
            try:
                os.remove(path)
                removed += 1
            except FileNotFoundError:
                pass
        logger.info(f"Purged {removed} stale chunks for session {upload_session_id}")
        return removed

    async def purge_session(self, upload_session_id: str, older_than: float) -> int:
        return await self._run(self._purge_session_sync, upload_session_id, older_than)

    def _purge_temp_files_sync(self, older_than: float) -> int:
        """Remove abandoned writes; only the staging directory is ever scanned."""
        removed = 0
        try:
            names = os.listdir(self.staging_dir)
        except FileNotFoundError:
            return removed
        for name in names:
            path = os.path.join(self.staging_dir, name)
            try:
                if os.path.getmtime(path) < older_than:
                    os.remove(path)
                    removed += 1
            except FileNotFoundError:
                pass
        return removed

    async def purge_temp_files(self, older_than: float) -> int:
        return await self._run(self._purge_temp_files_sync, older_than)


def _newest_mtime(paths: List[str]) -> Optional[float]:
    newest = None
    for path in paths:
        try:
            mtime = os.path.getmtime(path)
        except FileNotFoundError:
            continue
        if newest is None or mtime > newest:
            newest = mtime
    return newest
