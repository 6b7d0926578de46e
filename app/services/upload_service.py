import os
import logging
from typing import BinaryIO, Dict, List

from app.core.errors import IncompleteUploadError, InvalidInputError, StorageIOError, UploadError
from app.services.chunk_index import ChunkIndex
from app.services.storage.base import BaseStorage

logger = logging.getLogger(__name__)


class UploadService:
    """Chunk receipt, status reporting and completion merge for chunked uploads."""

    def __init__(self, index: ChunkIndex, storage: BaseStorage, completed_dir: str):
        self.index = index
        self.storage = storage
        self.completed_dir = completed_dir

    async def receive_chunk(self, upload_session_id: str, chunk_number: int, chunk_data: BinaryIO) -> str:
        """
        Store one chunk and register it in the index.

        The blob is published before the index is updated, so a chunk that
        shows up in the status is always readable.
        """
        chunk_path = await self.storage.save_chunk(upload_session_id, chunk_number, chunk_data)
        await self.index.add_chunk(upload_session_id, chunk_number)
        logger.info(f"Chunk {chunk_number} received for session {upload_session_id}")
        return chunk_path

    async def get_status(self, upload_session_id: str) -> List[int]:
        # An unknown session is simply one with no chunks yet
        chunks = await self.index.get_chunks(upload_session_id)
        return sorted(chunks)

    async def ensure_complete(self, upload_session_id: str, total_chunks: int) -> None:
        chunks = await self.index.get_chunks(upload_session_id)
        expected = set(range(1, total_chunks + 1))
        if chunks != expected:
            logger.warning(
                f"Completion rejected for session {upload_session_id}: "
                f"{len(chunks)} chunks registered, {total_chunks} declared"
            )
            raise IncompleteUploadError(missing=expected - chunks, unexpected=chunks - expected)

    def artifact_path(self, file_name: str) -> str:
        return os.path.join(self.completed_dir, file_name)

    async def complete_upload(self, upload_session_id: str, file_name: str, total_chunks: int) -> str:
        """
        Merge chunks 1..total_chunks into the final artifact, then drop the session.

        Cleanup only happens after a fully successful merge, so a failed
        attempt can be retried as long as the chunks are still there.
        """
        await self.ensure_complete(upload_session_id, total_chunks)

        merged_file_path = self.artifact_path(file_name)
        result = await self.storage.merge_chunks(upload_session_id, total_chunks, merged_file_path)

        cleanup = await self.storage.cleanup_session(upload_session_id, total_chunks)
        if not cleanup.get("success", False):
            # Leftover blobs are reclaimed by the sweeper once the session record is gone
            logger.warning(f"Some chunks of session {upload_session_id} could not be removed: {cleanup.get('errors')}")
        await self.index.delete_session(upload_session_id)

        logger.info(
            f"Upload {upload_session_id} completed as {merged_file_path} "
            f"({result['total_size']} bytes from {result['chunks_merged']} chunks)"
        )
        return merged_file_path

    async def schedule_completion(self, upload_session_id: str, total_chunks: int) -> bool:
        """
        Validate a background completion request and claim its merge job.

        Returns False if a merge for this session is already pending or
        running; the caller must not start another one.
        """
        await self.ensure_complete(upload_session_id, total_chunks)
        return await self.index.claim_merge_job(upload_session_id)

    async def run_completion(self, upload_session_id: str, file_name: str, total_chunks: int) -> None:
        """Background task body; records the outcome in the merge job."""
        await self.index.set_merge_job(upload_session_id, "running")
        try:
            path = await self.complete_upload(upload_session_id, file_name, total_chunks)
        except UploadError as e:
            logger.error(f"Background completion failed for session {upload_session_id}: {e.message}")
            await self.index.set_merge_job(upload_session_id, "failed", error=e.message)
            return
        except Exception:
            logger.exception(f"Unexpected error during background completion of session {upload_session_id}")
            await self.index.set_merge_job(upload_session_id, "failed", error="Unexpected error during merge")
            raise
        await self.index.set_merge_job(upload_session_id, "completed", path=path)

    async def get_completion_status(self, upload_session_id: str) -> Dict[str, str]:
        job = await self.index.get_merge_job(upload_session_id)
        if job is None:
            return {"state": "unknown", "path": "", "error": ""}
        return job

    async def save_file(self, file_name: str, file_data: BinaryIO) -> str:
        try:
            return await self.storage.save_file(file_name, file_data)
        except StorageIOError as e:
            # A failed single-shot upload is reported as a rejected request
            raise InvalidInputError(e.message) from e
