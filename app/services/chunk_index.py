"""Redis-backed chunk index.

Keeps, per upload session, the set of received chunk numbers
(``upload_status:<id>``), an explicit session record with creation and
last-update timestamps (``upload_session:<id>``), and the state of a
background merge job (``upload_merge:<id>``). The session set and record
share a TTL that is refreshed on every registered chunk, so abandoned
sessions expire on their own.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Set

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from app.core.errors import DependencyUnavailableError

logger = logging.getLogger(__name__)

ACTIVE_MERGE_STATES = ("pending", "running")


class ChunkIndex:
    def __init__(
        self,
        redis_client: redis.Redis,
        key_prefix: str = "upload_status:",
        session_prefix: str = "upload_session:",
        merge_job_prefix: str = "upload_merge:",
        session_ttl: int = 86400,
    ):
        self._redis = redis_client
        self.key_prefix = key_prefix
        self.session_prefix = session_prefix
        self.merge_job_prefix = merge_job_prefix
        self.session_ttl = session_ttl

    def _chunks_key(self, session_id: str) -> str:
        return f"{self.key_prefix}{session_id}"

    def _session_key(self, session_id: str) -> str:
        return f"{self.session_prefix}{session_id}"

    def _merge_job_key(self, session_id: str) -> str:
        return f"{self.merge_job_prefix}{session_id}"

    async def ping(self) -> None:
        try:
            await self._redis.ping()
        except (RedisError, OSError) as e:
            logger.error(f"Could not connect to Redis: {e}")
            raise DependencyUnavailableError(f"Could not connect to Redis: {e}") from e

    async def add_chunk(self, session_id: str, chunk_number: int) -> None:
        """Register a chunk number and refresh the session record and TTL."""
        now = datetime.now(timezone.utc).isoformat()
        chunks_key = self._chunks_key(session_id)
        session_key = self._session_key(session_id)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.sadd(chunks_key, str(chunk_number))
                pipe.hsetnx(session_key, "created_at", now)
                pipe.hset(session_key, "updated_at", now)
                if self.session_ttl > 0:
                    pipe.expire(chunks_key, self.session_ttl)
                    pipe.expire(session_key, self.session_ttl)
                await pipe.execute()
        except (RedisError, OSError) as e:
            logger.error(f"Failed to register chunk {chunk_number} for session {session_id}: {e}")
            raise DependencyUnavailableError("Failed to update upload status") from e

    async def get_chunks(self, session_id: str) -> Set[int]:
        try:
            members = await self._redis.smembers(self._chunks_key(session_id))
        except (RedisError, OSError) as e:
            logger.error(f"Failed to read upload status for session {session_id}: {e}")
            raise DependencyUnavailableError("Failed to get upload status") from e

        chunks = set()
        for member in members:
            if isinstance(member, bytes):
                member = member.decode()
            try:
                chunks.add(int(member))
            except ValueError:
                logger.warning(f"Ignoring non-numeric chunk entry {member!r} for session {session_id}")
        return chunks

    async def count_chunks(self, session_id: str) -> int:
        try:
            return await self._redis.scard(self._chunks_key(session_id))
        except (RedisError, OSError) as e:
            raise DependencyUnavailableError("Failed to get upload status") from e

    async def get_session(self, session_id: str) -> Optional[Dict[str, str]]:
        """Return the session record, or None if it never existed or has expired."""
        try:
            record = await self._redis.hgetall(self._session_key(session_id))
        except (RedisError, OSError) as e:
            raise DependencyUnavailableError("Failed to read upload session") from e
        if not record:
            return None
        return {_text(k): _text(v) for k, v in record.items()}

    async def delete_session(self, session_id: str) -> None:
        try:
            await self._redis.delete(self._chunks_key(session_id), self._session_key(session_id))
        except (RedisError, OSError) as e:
            logger.error(f"Failed to delete index entry for session {session_id}: {e}")
            raise DependencyUnavailableError("Failed to delete upload status") from e

    async def set_merge_job(self, session_id: str, state: str, path: str = "", error: str = "") -> None:
        key = self._merge_job_key(session_id)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping={"state": state, "path": path, "error": error})
                if self.session_ttl > 0:
                    pipe.expire(key, self.session_ttl)
                await pipe.execute()
        except (RedisError, OSError) as e:
            raise DependencyUnavailableError("Failed to record merge job") from e

    async def claim_merge_job(self, session_id: str) -> bool:
        """
        Mark the merge job pending unless one is already pending or running.

        Returns False when another request holds the job.
        """
        key = self._merge_job_key(session_id)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                state = _text(await pipe.hget(key, "state") or "")
                if state in ACTIVE_MERGE_STATES:
                    return False
                pipe.multi()
                pipe.hset(key, mapping={"state": "pending", "path": "", "error": ""})
                if self.session_ttl > 0:
                    pipe.expire(key, self.session_ttl)
                await pipe.execute()
                return True
        except WatchError:
            # Another request changed the job between WATCH and EXEC
            return False
        except (RedisError, OSError) as e:
            raise DependencyUnavailableError("Failed to record merge job") from e

    async def get_merge_job(self, session_id: str) -> Optional[Dict[str, str]]:
        try:
            job = await self._redis.hgetall(self._merge_job_key(session_id))
        except (RedisError, OSError) as e:
            raise DependencyUnavailableError("Failed to read merge job") from e
        if not job:
            return None
        return {_text(k): _text(v) for k, v in job.items()}


def _text(value) -> str:
    return value.decode() if isinstance(value, bytes) else value


def create_redis_client(url: str, password: str = "") -> redis.Redis:
    return redis.from_url(
        url,
        password=password or None,
        decode_responses=True,
    )
