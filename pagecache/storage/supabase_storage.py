"""Supabase Storage backend."""
import posixpath

from supabase import create_client, ClientOptions

from .base import StorageBackend, validate_path
from ..config import SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY, STORAGE_TIMEOUT_SECONDS, PAGES_BUCKET, logger
from ..errors import StorageUnavailable, ObjectNotFound


def _is_not_found(exc) -> bool:
    status = getattr(exc, "status", None) or getattr(exc, "status_code", None)
    if str(status) == "404":
        return True
    return "not found" in str(exc).lower()


class SupabaseStorage(StorageBackend):
    """Wraps the supabase client; every client error becomes a PageCacheError."""

    name = "supabase"

    def __init__(self, url=SUPABASE_URL, key=SUPABASE_SERVICE_ROLE_KEY, timeout=STORAGE_TIMEOUT_SECONDS, client=None):
        if client is None:
            if not url or not key:
                raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
            client = create_client(url.strip(), key.strip(), options=ClientOptions(storage_client_timeout=timeout))
        self.client = client

    def _bucket(self, bucket):
        return self.client.storage.from_(bucket)

    def put(self, path, data, content_type=None, bucket=PAGES_BUCKET):
        path = validate_path(path)
        options = {"upsert": "true", "cache-control": "604800"}
        if content_type:
            options["content-type"] = content_type
        try:
            self._bucket(bucket).upload(path, data, options)
        except Exception as e:
            raise StorageUnavailable(f"upload failed for {bucket}/{path}: {e}", path=path) from e
        return path

    def exists(self, path, bucket=PAGES_BUCKET):
        path = validate_path(path)
        folder, name = posixpath.split(path)
        try:
            entries = self._bucket(bucket).list(folder, {"search": name, "limit": 100})
        except Exception as e:
            raise StorageUnavailable(f"listing failed for {bucket}/{folder}: {e}", path=path) from e
        return any(entry.get("name") == name for entry in entries or [])

    def delete(self, paths, bucket=PAGES_BUCKET):
        paths = [validate_path(p) for p in paths]
        if not paths:
            return 0
        try:
            removed = self._bucket(bucket).remove(paths)
        except Exception as e:
            raise StorageUnavailable(f"delete failed in {bucket}: {e}") from e
        return len(removed or [])

    def download(self, path, bucket=PAGES_BUCKET):
        path = validate_path(path)
        try:
            return self._bucket(bucket).download(path)
        except Exception as e:
            if _is_not_found(e):
                raise ObjectNotFound(f"object not found: {bucket}/{path}", path=path) from e
            raise StorageUnavailable(f"download failed for {bucket}/{path}: {e}", path=path) from e

    def create_signed_url(self, path, ttl_seconds, bucket=PAGES_BUCKET):
        path = validate_path(path)
        try:
            result = self._bucket(bucket).create_signed_url(path, int(ttl_seconds))
        except Exception as e:
            if _is_not_found(e):
                raise ObjectNotFound(f"object not found: {bucket}/{path}", path=path) from e
            raise StorageUnavailable(f"signing failed for {bucket}/{path}: {e}", path=path) from e
        url = (result or {}).get("signedURL") or (result or {}).get("signedUrl")
        if not url:
            logger.error(f"Supabase returned no signed URL for {bucket}/{path}: {result}")
            raise StorageUnavailable(f"no signed URL returned for {bucket}/{path}", path=path)
        return url
