"""Time-limited URLs for page images, issued fresh on every access."""
import datetime
import logging
from dataclasses import dataclass

from ..config import SIGNED_URL_TTL_SECONDS, SIGNED_URL_MAX_TTL_SECONDS, PAGES_BUCKET
from ..db.models import DocumentPage, utcnow
from ..errors import AccessDenied, PhantomPageDetected
from ..storage.base import StorageBackend
from .control import AccessControl, Principal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignedPageUrl:
    document_id: str
    page_number: int
    url: str
    expires_at: datetime.datetime
    ttl_seconds: int

    def to_dict(self):
        return {
            "document_id": self.document_id,
            "page_number": self.page_number,
            "url": self.url,
            "expires_at": self.expires_at.isoformat(),
            "ttl_seconds": self.ttl_seconds,
        }


class SignedUrlIssuer:
    """Stateless: reads the page record, never writes the URL back."""

    def __init__(self, access: AccessControl, storage: StorageBackend, bucket: str = PAGES_BUCKET,
                 max_ttl_seconds: int = SIGNED_URL_MAX_TTL_SECONDS):
        self.access = access
        self.storage = storage
        self.bucket = bucket
        self.max_ttl_seconds = max_ttl_seconds

    def issue(self, page: DocumentPage, principal: Principal, ttl_seconds: int = SIGNED_URL_TTL_SECONDS) -> SignedPageUrl:
        if not self.access.can_view(principal, page.document_id):
            raise AccessDenied(
                f"user {getattr(principal, 'user_id', None)} may not view document {page.document_id}",
                document_id=page.document_id,
            )
        if ttl_seconds is None or ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if not page.storage_path:
            raise PhantomPageDetected(
                f"page {page.page_number} of {page.document_id} has no storage path",
                document_id=page.document_id, page_number=page.page_number,
            )
        ttl = min(int(ttl_seconds), self.max_ttl_seconds)
        url = self.storage.create_signed_url(page.storage_path, ttl, bucket=self.bucket)
        logger.debug(f"Issued {ttl}s URL for page {page.page_number} of {page.document_id} to {principal.user_id}")
        return SignedPageUrl(
            document_id=page.document_id,
            page_number=page.page_number,
            url=url,
            expires_at=utcnow() + datetime.timedelta(seconds=ttl),
            ttl_seconds=ttl,
        )
