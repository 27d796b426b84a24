"""Bounded retry at the storage boundary.

Core services never retry. Callers that want retries (CLI, API, worker) wrap
their backend in RetryingStorage, which applies one policy to reads and another
to writes.
"""
import logging
from dataclasses import dataclass

from tenacity import Retrying, stop_after_attempt, wait_exponential, retry_if_exception_type, before_sleep_log

from .base import StorageBackend
from ..config import READ_RETRY_ATTEMPTS, WRITE_RETRY_ATTEMPTS, RETRY_BACKOFF_SECONDS, RETRY_BACKOFF_MAX_SECONDS, PAGES_BUCKET
from ..errors import StorageUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 0.5
    backoff_max_seconds: float = 8.0

    def retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(max(1, self.max_attempts)),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=self.backoff_max_seconds),
            retry=retry_if_exception_type(StorageUnavailable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )


READ_POLICY = RetryPolicy(READ_RETRY_ATTEMPTS, RETRY_BACKOFF_SECONDS, RETRY_BACKOFF_MAX_SECONDS)
WRITE_POLICY = RetryPolicy(WRITE_RETRY_ATTEMPTS, RETRY_BACKOFF_SECONDS, RETRY_BACKOFF_MAX_SECONDS)


class RetryingStorage(StorageBackend):
    """Delegates to another backend, retrying StorageUnavailable per policy."""

    def __init__(self, backend: StorageBackend, read_policy: RetryPolicy = READ_POLICY, write_policy: RetryPolicy = WRITE_POLICY):
        self.backend = backend
        self.read_policy = read_policy
        self.write_policy = write_policy

    @property
    def name(self):
        return self.backend.name

    def __getattr__(self, item):
        # backend-specific helpers such as LocalStorage.verify_signed_url
        return getattr(self.backend, item)

    def put(self, path, data, content_type=None, bucket=PAGES_BUCKET):
        return self.write_policy.retrying()(self.backend.put, path, data, content_type=content_type, bucket=bucket)

    def delete(self, paths, bucket=PAGES_BUCKET):
        return self.write_policy.retrying()(self.backend.delete, list(paths), bucket=bucket)

    def exists(self, path, bucket=PAGES_BUCKET):
        return self.read_policy.retrying()(self.backend.exists, path, bucket=bucket)

    def download(self, path, bucket=PAGES_BUCKET):
        return self.read_policy.retrying()(self.backend.download, path, bucket=bucket)

    def create_signed_url(self, path, ttl_seconds, bucket=PAGES_BUCKET):
        return self.read_policy.retrying()(self.backend.create_signed_url, path, ttl_seconds, bucket=bucket)
