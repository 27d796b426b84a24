"""Page record store: the database of record for rendered pages.

Page numbers are 1-based in records and in object names:
``{owner_id}/{document_id}/page-{n}.{format}`` in the pages bucket.
"""
import datetime
import logging
from typing import Iterable, List, Optional

from sqlalchemy import select, delete, func
from sqlalchemy.orm import Session

from ..config import PAGE_CACHE_TTL_DAYS
from ..db.models import DocumentPage, utcnow
from ..errors import DuplicatePage

logger = logging.getLogger(__name__)

PAGE_FORMATS = ("jpg", "png", "webp")
CONTENT_TYPES = {"jpg": "image/jpeg", "png": "image/png", "webp": "image/webp"}


def page_storage_path(owner_id: str, document_id: str, page_number: int, fmt: str = "jpg") -> str:
    if page_number < 1:
        raise ValueError(f"page numbers start at 1, got {page_number}")
    return f"{owner_id}/{document_id}/page-{page_number}.{fmt}"


def looks_like_url(value: str) -> bool:
    lowered = value.strip().lower()
    return lowered.startswith(("http://", "https://", "/api/", "api/"))


def page_metadata(page: DocumentPage, now=None) -> dict:
    return {
        "page_number": page.page_number,
        "page_url": page.page_url,
        "storage_path": page.storage_path,
        "file_size": page.file_size,
        "format": page.format,
        "dpi": page.dpi,
        "quality": page.quality,
        "generation": page.generation,
        "expires_at": page.expires_at.isoformat() if page.expires_at else None,
        "expired": page.is_expired(now),
    }


class PageStore:
    def __init__(self, session: Session, cache_ttl_days: int = PAGE_CACHE_TTL_DAYS):
        self.session = session
        self.cache_ttl_days = cache_ttl_days

    def _expiry(self):
        return utcnow() + datetime.timedelta(days=self.cache_ttl_days)

    def get_page(self, document_id: str, page_number: int) -> Optional[DocumentPage]:
        stmt = select(DocumentPage).filter_by(document_id=document_id, page_number=page_number)
        return self.session.execute(stmt).scalars().first()

    def write_page(self, document_id, page_number, storage_path, format="jpg", file_size=None,
                   generation=1, quality=None, dpi=None, generation_method="pdfplumber") -> DocumentPage:
        """Insert or replace the record for (document, page).

        Replacing is allowed only across generations (reconversion). Within one
        generation a second write must point at the same object.
        """
        if page_number < 1:
            raise ValueError(f"page numbers start at 1, got {page_number}")
        if not storage_path or not storage_path.strip():
            raise ValueError("storage_path is required")
        if looks_like_url(storage_path):
            raise ValueError(f"storage_path must be an object path, not a URL: {storage_path}")
        if format not in PAGE_FORMATS:
            raise ValueError(f"unsupported page format: {format}")

        page = self.get_page(document_id, page_number)
        if page is not None:
            if page.generation > generation:
                raise DuplicatePage(
                    f"page {page_number} of {document_id} already written by newer generation {page.generation}",
                    document_id=document_id, page_number=page_number,
                )
            if page.generation == generation and page.storage_path != storage_path:
                raise DuplicatePage(
                    f"page {page_number} of {document_id} already stored at {page.storage_path}",
                    document_id=document_id, page_number=page_number,
                )
            if page.generation < generation:
                logger.info(f"Replacing page {page_number} of {document_id} (generation {page.generation} -> {generation})")
        else:
            page = DocumentPage(document_id=document_id, page_number=page_number)
            self.session.add(page)

        page.storage_path = storage_path
        page.format = format
        page.file_size = file_size
        page.generation = generation
        page.quality = quality
        page.dpi = dpi
        page.generation_method = generation_method
        page.expires_at = self._expiry()
        self.session.commit()
        return page

    def list_pages(self, document_id: str) -> List[DocumentPage]:
        stmt = select(DocumentPage).filter_by(document_id=document_id).order_by(DocumentPage.page_number)
        return list(self.session.execute(stmt).scalars().all())

    def count_pages(self, document_id: str) -> int:
        stmt = select(func.count(DocumentPage.id)).filter(DocumentPage.document_id == document_id)
        return self.session.execute(stmt).scalar() or 0

    def delete_pages(self, document_id: str, page_numbers: Iterable[int]) -> int:
        page_numbers = sorted(set(page_numbers))
        if not page_numbers:
            return 0
        result = self.session.execute(
            delete(DocumentPage)
            .where(DocumentPage.document_id == document_id, DocumentPage.page_number.in_(page_numbers))
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount

    def prune_generations(self, document_id: str, keep_generation: int) -> int:
        """Drop pages left behind by older conversions."""
        result = self.session.execute(
            delete(DocumentPage)
            .where(DocumentPage.document_id == document_id, DocumentPage.generation < keep_generation)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        if result.rowcount:
            logger.info(f"Pruned {result.rowcount} stale pages of {document_id} (keeping generation {keep_generation})")
        return result.rowcount

    def refresh_expiry(self, document_id: str) -> int:
        pages = self.list_pages(document_id)
        expires_at = self._expiry()
        for page in pages:
            page.expires_at = expires_at
        self.session.commit()
        return len(pages)

    def list_expired_documents(self, now=None) -> List[str]:
        stmt = (
            select(DocumentPage.document_id)
            .filter(DocumentPage.expires_at.is_not(None), DocumentPage.expires_at <= (now or utcnow()))
            .distinct()
            .order_by(DocumentPage.document_id)
        )
        return list(self.session.execute(stmt).scalars().all())
