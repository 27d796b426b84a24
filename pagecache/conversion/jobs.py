"""Conversion job tracker.

State machine::

    queued -> processing -> completed
    queued | processing -> failed

Every transition is one conditional UPDATE on the current status, so two
callers racing on the same job cannot both succeed. The partial unique index
on conversion_jobs keeps at most one active job per document.
"""
import datetime
import logging
from typing import Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import PAGES_BUCKET, JOB_RETENTION_DAYS
from ..db.models import (
    ConversionJob, Document, JobStatus, JobStage, JobPriority, PRIORITY_RANK,
    ACTIVE_STATUSES, TERMINAL_STATUSES, utcnow,
)
from ..errors import ActiveJobExists, ConversionFailed, DocumentNotFound, InvalidTransition, JobNotFound
from ..pages.store import PageStore
from ..reconcile.reconciler import Reconciler
from ..storage.base import StorageBackend

logger = logging.getLogger(__name__)

STAGE_MESSAGES = {
    JobStage.queued: "Waiting in conversion queue",
    JobStage.downloading: "Downloading original document",
    JobStage.converting: "Rendering pages",
    JobStage.uploading: "Uploading page images",
    JobStage.finalizing: "Verifying pages",
    JobStage.completed: "Conversion complete",
    JobStage.failed: "Conversion failed",
}


class JobManager:
    def __init__(self, session: Session, storage: StorageBackend, bucket: str = PAGES_BUCKET):
        self.session = session
        self.pages = PageStore(session)
        self.reconciler = Reconciler(session, storage, bucket=bucket)

    # lookups

    def get_job(self, job_id: str) -> ConversionJob:
        job = self.session.get(ConversionJob, job_id)
        if job is None:
            raise JobNotFound(f"conversion job {job_id} not found", job_id=job_id)
        return job

    def get_active_job(self, document_id: str) -> Optional[ConversionJob]:
        stmt = (
            select(ConversionJob)
            .filter(ConversionJob.document_id == document_id, ConversionJob.status.in_(ACTIVE_STATUSES))
            .order_by(ConversionJob.created_at.desc())
        )
        return self.session.execute(stmt).scalars().first()

    def get_latest_job(self, document_id: str) -> Optional[ConversionJob]:
        stmt = (
            select(ConversionJob)
            .filter(ConversionJob.document_id == document_id)
            .order_by(ConversionJob.generation.desc(), ConversionJob.created_at.desc())
        )
        return self.session.execute(stmt).scalars().first()

    def get_latest_completed_job(self, document_id: str) -> Optional[ConversionJob]:
        stmt = (
            select(ConversionJob)
            .filter(ConversionJob.document_id == document_id, ConversionJob.status == JobStatus.completed)
            .order_by(ConversionJob.generation.desc())
        )
        return self.session.execute(stmt).scalars().first()

    def next_queued_job(self) -> Optional[ConversionJob]:
        """Highest priority first, FIFO within a priority."""
        stmt = (
            select(ConversionJob)
            .filter(ConversionJob.status == JobStatus.queued)
            .order_by(ConversionJob.priority_rank, ConversionJob.created_at)
            .limit(1)
        )
        return self.session.execute(stmt).scalars().first()

    # transitions

    def _existing(self, active: ConversionJob, exclusive: bool) -> ConversionJob:
        if exclusive:
            raise ActiveJobExists(
                f"document {active.document_id} already has {active.status.value} job {active.id}",
                document_id=active.document_id, job_id=active.id,
            )
        return active

    def request_conversion(self, document_id: str, priority=JobPriority.normal, exclusive: bool = False) -> ConversionJob:
        """Return the document's active job, or queue a new one.

        Calling this twice for the same document yields the same job. With
        exclusive=True an existing active job raises ActiveJobExists instead.
        """
        if self.session.get(Document, document_id) is None:
            raise DocumentNotFound(f"document {document_id} not found", document_id=document_id)

        active = self.get_active_job(document_id)
        if active is not None:
            logger.info(f"Document {document_id} already has {active.status.value} job {active.id}")
            return self._existing(active, exclusive)

        priority = JobPriority(priority)
        last_generation = self.session.execute(
            select(func.max(ConversionJob.generation)).filter(ConversionJob.document_id == document_id)
        ).scalar() or 0
        job = ConversionJob(
            document_id=document_id,
            status=JobStatus.queued,
            stage=JobStage.queued,
            priority=priority,
            priority_rank=PRIORITY_RANK[priority],
            generation=last_generation + 1,
        )
        self.session.add(job)
        try:
            self.session.commit()
        except IntegrityError:
            # a concurrent request inserted the active job first
            self.session.rollback()
            active = self.get_active_job(document_id)
            if active is None:
                raise
            logger.info(f"Lost queue race for {document_id}, attaching to job {active.id}")
            return self._existing(active, exclusive)
        logger.info(f"Queued conversion job {job.id} for {document_id} (generation {job.generation}, {priority.value})")
        return job

    def _transition(self, job_id, to_status, allowed_from, **values) -> ConversionJob:
        result = self.session.execute(
            update(ConversionJob)
            .where(ConversionJob.id == job_id, ConversionJob.status.in_(allowed_from))
            .values(status=to_status, updated_at=utcnow(), **values)
        )
        if result.rowcount != 1:
            self.session.rollback()
            job = self.get_job(job_id)
            raise InvalidTransition(
                f"job {job_id} cannot move to {to_status.value} from {job.status.value}",
                job_id=job_id, status=job.status.value,
            )
        self.session.commit()
        return self.get_job(job_id)

    def start(self, job_id: str) -> ConversionJob:
        job = self._transition(
            job_id, JobStatus.processing, (JobStatus.queued,),
            stage=JobStage.downloading, started_at=utcnow(),
        )
        logger.info(f"Started conversion job {job_id}")
        return job

    def report_progress(self, job_id: str, processed_pages: int, total_pages: int, stage=None) -> ConversionJob:
        if processed_pages < 0:
            raise ValueError("processed_pages cannot be negative")
        if total_pages and total_pages > 0:
            progress = int(round(processed_pages / total_pages * 100))
        else:
            progress = 0
        values = {
            "progress": max(0, min(100, progress)),
            "processed_pages": processed_pages,
            "total_pages": total_pages,
        }
        if stage is not None:
            values["stage"] = JobStage(stage)
        return self._transition(job_id, JobStatus.processing, (JobStatus.processing,), **values)

    def complete(self, job_id: str) -> ConversionJob:
        """Finish a processing job once its pages are all present and backed.

        Missing or phantom pages fail the job and raise ConversionFailed. A
        storage outage during the check leaves the job processing.
        """
        job = self.get_job(job_id)
        if job.status != JobStatus.processing:
            raise InvalidTransition(
                f"job {job_id} cannot move to completed from {job.status.value}",
                job_id=job_id, status=job.status.value,
            )
        document_id = job.document_id
        total = job.total_pages or 0

        pages = [p for p in self.pages.list_pages(document_id) if p.generation == job.generation]
        numbers = {p.page_number for p in pages}
        missing = [n for n in range(1, total + 1) if n not in numbers]
        extra = sorted(n for n in numbers if n > total)
        phantoms = self.reconciler.find_phantoms([p for p in pages if p.page_number <= total])

        problems = []
        if total < 1:
            problems.append("no pages reported")
        if missing:
            problems.append(f"missing pages {missing}")
        if extra:
            problems.append(f"pages beyond total {extra}")
        if phantoms:
            problems.append(f"phantom pages {phantoms}")
        if problems:
            message = "reconciliation failed: " + "; ".join(problems)
            self.fail(job_id, message)
            raise ConversionFailed(message, job_id=job_id, document_id=document_id)

        job = self._transition(
            job_id, JobStatus.completed, (JobStatus.processing,),
            stage=JobStage.completed, progress=100, processed_pages=total, completed_at=utcnow(),
        )
        self.pages.prune_generations(document_id, job.generation)
        logger.info(f"Completed conversion job {job_id}: {total} pages")
        return job

    def fail(self, job_id: str, error: str) -> ConversionJob:
        job = self._transition(
            job_id, JobStatus.failed, ACTIVE_STATUSES,
            stage=JobStage.failed, error_message=error, completed_at=utcnow(),
        )
        logger.error(f"Conversion job {job_id} failed: {error}")
        return job

    # reporting

    def get_progress(self, document_id: str) -> Optional[dict]:
        job = self.get_active_job(document_id) or self.get_latest_job(document_id)
        if job is None:
            return None
        return {
            "job_id": job.id,
            "document_id": job.document_id,
            "status": job.status.value,
            "stage": job.stage.value,
            "message": STAGE_MESSAGES[job.stage],
            "progress": job.progress,
            "total_pages": job.total_pages,
            "processed_pages": job.processed_pages,
            "generation": job.generation,
            "priority": job.priority.value,
            "error": job.error_message,
        }

    def metrics(self, window_hours: int = 24, now=None) -> dict:
        now = now or utcnow()
        since = now - datetime.timedelta(hours=window_hours)
        queued = self.session.execute(
            select(func.count(ConversionJob.id)).filter(ConversionJob.status == JobStatus.queued)
        ).scalar()
        processing = self.session.execute(
            select(func.count(ConversionJob.id)).filter(ConversionJob.status == JobStatus.processing)
        ).scalar()
        recent = self.session.execute(
            select(ConversionJob).filter(ConversionJob.created_at >= since)
        ).scalars().all()

        completed = [j for j in recent if j.status == JobStatus.completed and j.started_at and j.completed_at]
        failed = [j for j in recent if j.status == JobStatus.failed]
        durations = [(j.completed_at - j.started_at).total_seconds() for j in completed]
        total = len(recent)
        return {
            "queue_depth": queued,
            "active_jobs": processing,
            "recent_jobs": total,
            "success_rate": round(len(completed) / total * 100, 2) if total else 100.0,
            "failure_rate": round(len(failed) / total * 100, 2) if total else 0.0,
            "average_processing_seconds": round(sum(durations) / len(durations), 3) if durations else 0.0,
        }

    def _retained_job_ids(self, document_id: str) -> set:
        """The latest job and the latest completed job, which page serving relies on."""
        keep = set()
        for job in (self.get_latest_job(document_id), self.get_latest_completed_job(document_id)):
            if job is not None:
                keep.add(job.id)
        return keep

    def cleanup_old_jobs(self, older_than_days: int = JOB_RETENTION_DAYS, now=None) -> int:
        """Delete finished jobs past retention.

        Each document keeps its latest job and its latest completed job.
        """
        cutoff = (now or utcnow()) - datetime.timedelta(days=older_than_days)
        candidates = self.session.execute(
            select(ConversionJob).filter(
                ConversionJob.status.in_(TERMINAL_STATUSES),
                ConversionJob.completed_at < cutoff,
            )
        ).scalars().all()
        retained = {}
        removed = 0
        for job in candidates:
            if job.document_id not in retained:
                retained[job.document_id] = self._retained_job_ids(job.document_id)
            if job.id in retained[job.document_id]:
                continue
            self.session.delete(job)
            removed += 1
        self.session.commit()
        logger.info(f"Removed {removed} conversion jobs older than {older_than_days} days")
        return removed
