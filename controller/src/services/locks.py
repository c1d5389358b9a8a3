"""
Deployment-target lock.

Runs publishing to the same Pages project take turns at the upload. The
last run to publish still wins; the lock only keeps uploads from
interleaving.
"""

import hashlib
import logging
import time
from contextlib import contextmanager, nullcontext
from typing import Callable, Optional

import redis
from redis.exceptions import LockError

from controller.src.errors import PublishError, RunAborted
from controller.src.models.step import StageKind

logger = logging.getLogger(__name__)

LOCK_PREFIX = "pagesflow:publish:"

def target_key(account_id: str, project_name: str) -> str:
    """Lock name for a deployment target. Hashed so no credential ends up in Redis."""
    digest = hashlib.sha256(f"{account_id}:{project_name}".encode()).hexdigest()
    return digest[:16]

def no_lock(target: str):
    return nullcontext()

class RedisPublishLock:
    def __init__(
        self,
        client: redis.Redis,
        timeout: int,
        wait: int,
        abort_check: Optional[Callable[[], bool]] = None,
        poll_interval: float = 1.0,
    ):
        self.client = client
        self.timeout = timeout
        self.wait = wait
        self.abort_check = abort_check or (lambda: False)
        self.poll_interval = poll_interval

    def _acquire(self, lock, target: str):
        # Wait in short slices so an abort does not sit out the full wait
        deadline = time.monotonic() + self.wait
        while not lock.acquire():
            if self.abort_check():
                raise RunAborted(
                    f"Run aborted while waiting for publish lock {target}",
                    stage=StageKind.PUBLISH.value,
                )
            if time.monotonic() >= deadline:
                raise PublishError(
                    f"Another run is still publishing to this target after {self.wait}s",
                    stage=StageKind.PUBLISH.value,
                )

    @contextmanager
    def __call__(self, target: str):
        lock = self.client.lock(
            f"{LOCK_PREFIX}{target}",
            timeout=self.timeout,
            blocking_timeout=min(self.poll_interval, self.wait),
        )
        self._acquire(lock, target)
        logger.info(f"Acquired publish lock {target}")
        try:
            yield
        finally:
            try:
                lock.release()
            except LockError:
                logger.warning(f"Publish lock {target} expired before release")
