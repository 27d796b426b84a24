"""Contract for the object store holding original files and page images."""
import posixpath

from ..config import PAGES_BUCKET


def validate_path(path: str) -> str:
    """Reject empty, absolute or parent-escaping object paths."""
    if not path or not isinstance(path, str):
        raise ValueError("storage path is required")
    normalized = posixpath.normpath(path)
    if path.startswith("/") or normalized == ".." or normalized.startswith("../"):
        raise ValueError(f"invalid storage path: {path!r}")
    return normalized


class StorageBackend:
    """Operations every backend supports.

    Backend failures (network, auth, timeout) raise StorageUnavailable and are
    never reported as a missing object.
    """

    name = "abstract"

    def put(self, path: str, data: bytes, content_type: str = None, bucket: str = PAGES_BUCKET) -> str:
        raise NotImplementedError

    def exists(self, path: str, bucket: str = PAGES_BUCKET) -> bool:
        raise NotImplementedError

    def delete(self, paths, bucket: str = PAGES_BUCKET) -> int:
        raise NotImplementedError

    def create_signed_url(self, path: str, ttl_seconds: int, bucket: str = PAGES_BUCKET) -> str:
        raise NotImplementedError

    def download(self, path: str, bucket: str = PAGES_BUCKET) -> bytes:
        raise NotImplementedError
