"""Storage reconciliation: every page record must have a live backing object."""
import logging
from dataclasses import dataclass, field, asdict
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import PAGES_BUCKET
from ..db.models import ConversionJob, DocumentPage, ACTIVE_STATUSES
from ..errors import PhantomPageDetected, StorageUnavailable
from ..pages.store import PageStore
from ..storage.base import StorageBackend

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    document_id: str
    checked: int = 0
    phantom: int = 0
    deleted: int = 0
    phantom_pages: List[int] = field(default_factory=list)
    skipped: bool = False
    reason: Optional[str] = None

    def to_dict(self):
        return asdict(self)


class Reconciler:
    def __init__(self, session: Session, storage: StorageBackend, bucket: str = PAGES_BUCKET):
        self.session = session
        self.storage = storage
        self.bucket = bucket
        self.pages = PageStore(session)

    def has_active_job(self, document_id: str) -> bool:
        stmt = select(ConversionJob.id).filter(
            ConversionJob.document_id == document_id,
            ConversionJob.status.in_(ACTIVE_STATUSES),
        )
        return self.session.execute(stmt).first() is not None

    def find_phantoms(self, pages: List[DocumentPage]) -> List[int]:
        """Page numbers whose object is missing. Storage errors propagate."""
        phantoms = []
        for page in pages:
            if not page.storage_path:
                phantoms.append(page.page_number)
                continue
            if not self.storage.exists(page.storage_path, bucket=self.bucket):
                phantoms.append(page.page_number)
        return phantoms

    def reconcile(self, document_id: str) -> ReconcileReport:
        """Delete phantom page records for one document.

        Documents with a queued or processing job are skipped: the worker may
        still be writing their pages.
        """
        report = ReconcileReport(document_id=document_id)
        if self.has_active_job(document_id):
            report.skipped = True
            report.reason = "active conversion job"
            logger.info(f"Skipping reconciliation of {document_id}: active conversion job")
            return report

        pages = self.pages.list_pages(document_id)
        report.checked = len(pages)
        # a StorageUnavailable here aborts before anything is deleted
        phantoms = self.find_phantoms(pages)
        report.phantom = len(phantoms)
        report.phantom_pages = phantoms

        if phantoms:
            warning = PhantomPageDetected(
                f"{len(phantoms)} phantom pages in {document_id}", document_id=document_id, pages=phantoms,
            )
            logger.warning(f"{warning.message}: {phantoms}")
            report.deleted = self.pages.delete_pages(document_id, phantoms)

        logger.info(f"Reconciled {document_id}: checked={report.checked} phantom={report.phantom} deleted={report.deleted}")
        return report

    def reconcile_all(self) -> List[dict]:
        """Reconcile every document that has page records.

        A storage outage on one document is reported and does not stop the run.
        """
        stmt = select(DocumentPage.document_id).distinct().order_by(DocumentPage.document_id)
        document_ids = self.session.execute(stmt).scalars().all()
        results = []
        for document_id in document_ids:
            try:
                results.append(self.reconcile(document_id).to_dict())
            except StorageUnavailable as e:
                logger.error(f"Reconciliation aborted for {document_id}: {e}")
                results.append({"document_id": document_id, "error": e.message, "retryable": True})
        return results
