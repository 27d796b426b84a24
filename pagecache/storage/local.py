"""Filesystem-backed object store for local development and tests.

Buckets are directories under STORAGE_ROOT. Signed URLs carry an HMAC token
and an expiry timestamp and are served by the API's /storage routes.
"""
import hashlib
import hmac
import os
import tempfile
import time
from pathlib import Path
from urllib.parse import quote

from .base import StorageBackend, validate_path
from ..config import STORAGE_ROOT, STORAGE_SIGNING_SECRET, PUBLIC_BASE_URL, PAGES_BUCKET, logger
from ..errors import StorageUnavailable, ObjectNotFound


class LocalStorage(StorageBackend):
    name = "local"

    def __init__(self, root=None, secret=STORAGE_SIGNING_SECRET, base_url=PUBLIC_BASE_URL, clock=time.time):
        self.root = Path(root or STORAGE_ROOT).expanduser()
        self.secret = secret.encode("utf-8")
        self.base_url = base_url.rstrip("/")
        self.clock = clock

    def _object_path(self, bucket: str, path: str) -> Path:
        return self.root / bucket / validate_path(path)

    def put(self, path, data, content_type=None, bucket=PAGES_BUCKET):
        dest = self._object_path(bucket, path)
        tmp_path = None
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            # write to a temp file first so readers never see partial objects
            with tempfile.NamedTemporaryFile(dir=dest.parent, delete=False, suffix=".tmp") as tmp_file:
                tmp_file.write(data)
                tmp_path = tmp_file.name
            os.replace(tmp_path, dest)
        except OSError as e:
            if tmp_path and os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise StorageUnavailable(f"failed to store {bucket}/{path}: {e}", path=path) from e
        return path

    def exists(self, path, bucket=PAGES_BUCKET):
        try:
            return self._object_path(bucket, path).is_file()
        except OSError as e:
            raise StorageUnavailable(f"failed to stat {bucket}/{path}: {e}", path=path) from e

    def delete(self, paths, bucket=PAGES_BUCKET):
        removed = 0
        for path in paths:
            target = self._object_path(bucket, path)
            try:
                target.unlink()
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                raise StorageUnavailable(f"failed to delete {bucket}/{path}: {e}", path=path) from e
        return removed

    def download(self, path, bucket=PAGES_BUCKET):
        try:
            return self._object_path(bucket, path).read_bytes()
        except FileNotFoundError as e:
            raise ObjectNotFound(f"object not found: {bucket}/{path}", path=path) from e
        except OSError as e:
            raise StorageUnavailable(f"failed to read {bucket}/{path}: {e}", path=path) from e

    def _token(self, bucket: str, path: str, expires: int) -> str:
        message = f"{bucket}/{path}:{expires}".encode("utf-8")
        return hmac.new(self.secret, message, hashlib.sha256).hexdigest()

    def create_signed_url(self, path, ttl_seconds, bucket=PAGES_BUCKET):
        path = validate_path(path)
        if not self.exists(path, bucket=bucket):
            raise ObjectNotFound(f"object not found: {bucket}/{path}", path=path)
        expires = int(self.clock()) + int(ttl_seconds)
        token = self._token(bucket, path, expires)
        logger.debug(f"Signed {bucket}/{path} until {expires}")
        return f"{self.base_url}/storage/v1/object/sign/{bucket}/{quote(path)}?token={token}&expires={expires}"

    def verify_signed_url(self, bucket: str, path: str, token: str, expires: int) -> bool:
        """True when the token matches and has not expired yet."""
        try:
            path = validate_path(path)
            expires = int(expires)
        except (TypeError, ValueError):
            return False
        if self.clock() >= expires:
            return False
        return hmac.compare_digest(self._token(bucket, path, expires), token or "")
