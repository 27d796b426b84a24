from .base import StorageBackend, validate_path
from .local import LocalStorage
from .retry import RetryingStorage, RetryPolicy, READ_POLICY, WRITE_POLICY
from ..config import STORAGE_BACKEND


def get_storage(backend=None, retry=True) -> StorageBackend:
    """Build the configured backend, wrapped with the retry policy by default."""
    backend = backend or STORAGE_BACKEND
    if backend == "supabase":
        from .supabase_storage import SupabaseStorage
        storage = SupabaseStorage()
    elif backend == "local":
        storage = LocalStorage()
    else:
        raise ValueError(f"unknown storage backend: {backend}")
    return RetryingStorage(storage) if retry else storage


__all__ = [
    "StorageBackend", "LocalStorage", "RetryingStorage", "RetryPolicy",
    "READ_POLICY", "WRITE_POLICY", "get_storage", "validate_path",
]
