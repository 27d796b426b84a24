"""Conversion worker: renders a document's pages and records them.

The conversion_jobs table is the queue; run_once claims the next queued job
with the same compare-and-swap the job manager uses for every transition.
"""
import io
import logging
from typing import Optional

import pdfplumber

from ..config import CONVERSION_DPI, CONVERSION_QUALITY, CONVERSION_FORMAT, PAGES_BUCKET, DOCUMENTS_BUCKET
from ..db.models import ConversionJob, Document, JobStage, JobStatus
from ..errors import ConversionFailed, InvalidTransition
from ..pages.store import page_storage_path, CONTENT_TYPES
from .jobs import JobManager

logger = logging.getLogger(__name__)

PIL_FORMATS = {"jpg": "JPEG", "png": "PNG", "webp": "WEBP"}


def render_page(page, dpi=CONVERSION_DPI, quality=CONVERSION_QUALITY, fmt=CONVERSION_FORMAT) -> bytes:
    """Rasterize one pdfplumber page and encode it."""
    image = page.to_image(resolution=dpi).original
    if fmt == "jpg" and image.mode != "RGB":
        image = image.convert("RGB")
    buf = io.BytesIO()
    image.save(buf, format=PIL_FORMATS[fmt], quality=quality, optimize=True)
    return buf.getvalue()


class ConversionWorker:
    def __init__(self, session, storage, dpi=CONVERSION_DPI, quality=CONVERSION_QUALITY, fmt=CONVERSION_FORMAT,
                 pages_bucket=PAGES_BUCKET, documents_bucket=DOCUMENTS_BUCKET):
        if fmt not in PIL_FORMATS:
            raise ValueError(f"unsupported page format: {fmt}")
        self.session = session
        self.storage = storage
        self.dpi = dpi
        self.quality = quality
        self.fmt = fmt
        self.pages_bucket = pages_bucket
        self.documents_bucket = documents_bucket
        self.jobs = JobManager(session, storage, bucket=pages_bucket)
        self.pages = self.jobs.pages

    def _convert(self, job: ConversionJob, doc: Document) -> int:
        if not doc.is_pdf:
            raise ConversionFailed(f"content type {doc.content_type} cannot be converted to pages", document_id=doc.id)

        data = self.storage.download(doc.storage_path, bucket=self.documents_bucket)
        logger.info(f"Downloaded {doc.storage_path} ({len(data) / 1024:.1f} KB)")

        with pdfplumber.open(io.BytesIO(data)) as pdf:
            total = len(pdf.pages)
            self.jobs.report_progress(job.id, 0, total, stage=JobStage.converting)
            for page_number, page in enumerate(pdf.pages, start=1):
                image_bytes = render_page(page, dpi=self.dpi, quality=self.quality, fmt=self.fmt)
                path = page_storage_path(doc.user_id, doc.id, page_number, self.fmt)
                self.storage.put(path, image_bytes, content_type=CONTENT_TYPES[self.fmt], bucket=self.pages_bucket)
                self.pages.write_page(
                    doc.id, page_number, path,
                    format=self.fmt,
                    file_size=len(image_bytes),
                    generation=job.generation,
                    quality=self.quality,
                    dpi=self.dpi,
                    generation_method="pdfplumber",
                )
                self.jobs.report_progress(job.id, page_number, total, stage=JobStage.uploading)
        self.jobs.report_progress(job.id, total, total, stage=JobStage.finalizing)
        return total

    def process_job(self, job: ConversionJob) -> ConversionJob:
        """Run one job to a terminal state and return it."""
        doc = self.session.get(Document, job.document_id)
        if job.status == JobStatus.queued:
            job = self.jobs.start(job.id)
        job_id = job.id
        try:
            total = self._convert(job, doc)
            job = self.jobs.complete(job_id)
            logger.info(f"Converted {doc.id}: {total} pages")
        except ConversionFailed as e:
            job = self._fail_if_active(job_id, e.message)
        except Exception as e:
            logger.exception(f"Conversion of {doc.id} failed")
            self.session.rollback()
            job = self._fail_if_active(job_id, str(e) or type(e).__name__)
        return job

    def _fail_if_active(self, job_id: str, message: str) -> ConversionJob:
        # the job may already be terminal, e.g. failed by an operator mid-run
        job = self.jobs.get_job(job_id)
        if job.is_active:
            job = self.jobs.fail(job_id, message)
        else:
            logger.warning(f"Job {job_id} is already {job.status.value}, not recording: {message}")
        return job

    def run_once(self, max_claim_attempts: int = 3) -> Optional[ConversionJob]:
        """Claim and process the next queued job, or return None if the queue is empty."""
        for _ in range(max_claim_attempts):
            job = self.jobs.next_queued_job()
            if job is None:
                return None
            try:
                job = self.jobs.start(job.id)
            except InvalidTransition:
                # another worker claimed it first
                continue
            return self.process_job(job)
        return None
