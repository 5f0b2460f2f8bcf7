import logging
from typing import Optional, Protocol
from uuid import UUID
from redis.asyncio import Redis

logger = logging.getLogger(__name__)


def artifact_url(report_id: UUID, api_prefix: str = "/api/v1") -> str:
    """Artifact reference stored on a generated report row."""
    return f"{api_prefix}/reports/{report_id}/download"


class ArtifactStore(Protocol):
    async def save(self, report_id: UUID, content: bytes) -> None: ...

    async def load(self, report_id: UUID) -> Optional[bytes]: ...


class RedisArtifactStore:
    """Rendered report PDFs, kept for ttl_seconds. Download re-renders on a miss."""

    def __init__(self, redis: Redis, ttl_seconds: int):
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(report_id: UUID) -> str:
        return f"artifact:{{{report_id}}}:pdf"

    async def save(self, report_id: UUID, content: bytes):
        await self.redis.set(self._key(report_id), content, ex=self.ttl_seconds)
        logger.info(f"stored artifact for report {report_id} ({len(content)} bytes)")

    async def load(self, report_id: UUID) -> Optional[bytes]:
        return await self.redis.get(self._key(report_id))
