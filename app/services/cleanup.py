import time
import asyncio
import logging

from app.core.errors import UploadError
from app.services.chunk_index import ChunkIndex
from app.services.storage.base import BaseStorage

logger = logging.getLogger(__name__)


async def sweep_expired_sessions(index: ChunkIndex, storage: BaseStorage, session_ttl: int) -> int:
    """
    Delete chunk blobs whose session record has expired from the index.

    Blobs touched within the last ``session_ttl`` seconds are kept, which
    covers a session whose first chunk is written but not yet registered.
    """
    cutoff = time.time() - session_ttl
    removed = 0
    for upload_session_id in await storage.list_sessions():
        if await index.get_session(upload_session_id) is not None:
            continue
        removed += await storage.purge_session(upload_session_id, cutoff)
    removed += await storage.purge_temp_files(cutoff)
    if removed:
        logger.info(f"Sweeper removed {removed} stale files")
    return removed


async def periodic_cleanup(index: ChunkIndex, storage: BaseStorage, session_ttl: int, interval: int):
    while True:
        await asyncio.sleep(interval)
        try:
            await sweep_expired_sessions(index, storage, session_ttl)
        except (UploadError, OSError) as e:
            # Keep sweeping; the next pass retries whatever failed
            logger.error(f"Session sweep failed: {e}")


def start_cleanup_task(index: ChunkIndex, storage: BaseStorage, session_ttl: int, interval: int):
    if interval <= 0:
        return None
    loop = asyncio.get_event_loop()
    return loop.create_task(periodic_cleanup(index, storage, session_ttl, interval))
