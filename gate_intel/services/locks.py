"""
Per-event advisory locks for pipeline execution

Acquisition never blocks: a second execute for the same event fails
immediately with PipelineBusy. The memory backend serializes within one
process; the redis backend serializes across API and worker processes.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional, Set

import redis
from redis.exceptions import LockNotOwnedError

from gate_intel.config import settings
from gate_intel.errors import PipelineBusy

logger = logging.getLogger(__name__)


class PipelineLockService:

    def __init__(self, backend: Optional[str] = None):
        self.backend = backend or settings.PIPELINE_LOCK_BACKEND
        # Only events currently being executed, so the registry stays bounded
        self._held: Set[str] = set()
        self._registry_lock = threading.Lock()
        self._redis_client: Optional[redis.Redis] = None

    def _get_redis(self) -> redis.Redis:
        if self._redis_client is None:
            self._redis_client = redis.from_url(settings.REDIS_URL)
        return self._redis_client

    def _busy(self, event_id: str) -> PipelineBusy:
        logger.warning(f"Gate pipeline already running for event {event_id}")
        return PipelineBusy(
            f"Gate pipeline already running for event {event_id}",
            {"event_id": event_id}
        )

    @contextmanager
    def acquire(self, event_id: str) -> Iterator[None]:
        """Hold the execute lock of ``event_id`` or raise PipelineBusy."""
        if self.backend == "redis":
            with self._redis_lock(event_id):
                yield
        else:
            with self._memory_lock(event_id):
                yield

    @contextmanager
    def _memory_lock(self, event_id: str) -> Iterator[None]:
        with self._registry_lock:
            if event_id in self._held:
                raise self._busy(event_id)
            self._held.add(event_id)
        try:
            yield
        finally:
            with self._registry_lock:
                self._held.discard(event_id)

    @contextmanager
    def _redis_lock(self, event_id: str) -> Iterator[None]:
        lock = self._get_redis().lock(
            f"gate_pipeline:{event_id}",
            timeout=settings.PIPELINE_LOCK_TTL_SEC,
            blocking=False,
        )
        if not lock.acquire(blocking=False):
            raise self._busy(event_id)
        try:
            yield
        finally:
            try:
                lock.release()
            except LockNotOwnedError:
                # TTL ran out mid-run; the run's own outcome still stands
                logger.warning(
                    f"Gate pipeline lock for event {event_id} expired before release "
                    f"(ttl {settings.PIPELINE_LOCK_TTL_SEC}s)"
                )


# Singleton instance
pipeline_lock_service = PipelineLockService()
