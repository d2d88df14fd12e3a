import logging
from typing import Optional

from fastapi import Request
from limits import parse
from limits.storage import MemoryStorage, Storage
from limits.strategies import MovingWindowRateLimiter

logger = logging.getLogger(__name__)


def client_identity(request: Request) -> str:
    """X-Client-ID 헤더가 있으면 사용, 없으면 원격 주소."""
    client_id = request.headers.get("X-Client-ID")
    if client_id:
        return f"client:{client_id}"
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    return f"ip:{request.client.host if request.client else 'unknown'}"


class UploadRateLimiter:
    """
    호출자 단위 rate limiter.
    프로세스 시작 시 한 번 만들어 PipelineRuntime 으로 전달합니다 (모듈 전역 상태 없음).
    """

    def __init__(self, limit: str = "10/minute", storage: Optional[Storage] = None, namespace: str = "upload"):
        self.limit = parse(limit)
        self.namespace = namespace
        self._storage = storage or MemoryStorage()
        self._limiter = MovingWindowRateLimiter(self._storage)

    def hit(self, identity: str) -> bool:
        """허용되면 True. 한도를 넘으면 False."""
        allowed = self._limiter.hit(self.limit, self.namespace, identity)
        if not allowed:
            logger.warning(f"[RATE_LIMIT] {self.namespace} limit exceeded for {identity} ({self.limit})")
        return allowed

    def remaining(self, identity: str) -> int:
        stats = self._limiter.get_window_stats(self.limit, self.namespace, identity)
        return stats.remaining

    def reset(self):
        self._storage.reset()
