"""Database-only audit of a document's page records."""

from sqlalchemy import func, select

from ..config import BLANK_PAGE_AVG_KB, SUSPICIOUS_PAGE_AVG_KB, SUSPICIOUS_PAGE_BYTES
from ..db.models import Document, DocumentPage, ConversionJob, JobStatus
from ..pages.store import looks_like_url


def audit_document(session, document_id):
    """Check page records against the latest completed conversion.

    Returns dict with statistics and any issues found. Does not touch storage.
    """
    doc = session.get(Document, document_id)
    if not doc:
        return {"error": "document not found"}

    pages = session.execute(
        select(DocumentPage).filter_by(document_id=document_id).order_by(DocumentPage.page_number)
    ).scalars().all()
    job = session.execute(
        select(ConversionJob)
        .filter_by(document_id=document_id, status=JobStatus.completed)
        .order_by(ConversionJob.completed_at.desc())
    ).scalars().first()

    issues = []
    page_numbers = [p.page_number for p in pages]

    # check for gaps in page numbers
    if page_numbers:
        expected_pages = set(range(1, max(page_numbers) + 1))
        missing = expected_pages - set(page_numbers)
        if missing:
            issues.append(f"Missing pages: {sorted(missing)}")

    if job and job.total_pages is not None and job.total_pages != len(pages):
        issues.append(f"Page count mismatch: job reports {job.total_pages}, store has {len(pages)}")

    pathless = [p.page_number for p in pages if not p.storage_path]
    if pathless:
        issues.append(f"Pages without storage path: {pathless}")

    url_paths = [p.page_number for p in pages if p.storage_path and looks_like_url(p.storage_path)]
    if url_paths:
        issues.append(f"Pages storing a URL instead of a storage path: {url_paths}")

    generations = session.execute(
        select(DocumentPage.generation, func.count(DocumentPage.id))
        .filter(DocumentPage.document_id == document_id)
        .group_by(DocumentPage.generation)
    ).all()
    if len(generations) > 1:
        issues.append(f"Pages from {len(generations)} generations present")

    sizes = page_size_stats(pages)
    if sizes and sizes["classification"] == "blank":
        issues.append(f"Pages look blank: average {sizes['average_kb']} KB")

    return {
        "document_id": str(document_id),
        "title": doc.title,
        "content_type": doc.content_type,
        "latest_completed_job": job.id if job else None,
        "stats": {
            "total_pages": len(pages),
            "expected_pages": job.total_pages if job else None,
            "generations": {generation: count for generation, count in generations},
            "total_bytes": sum(p.file_size or 0 for p in pages),
            "page_sizes": sizes,
        },
        "issues": issues,
        "overall": "pass" if not issues else "fail",
    }


def list_documents_status(session):
    """List all documents with their latest conversion status and page counts."""
    docs = session.execute(select(Document).order_by(Document.created_at.desc())).scalars().all()
    results = []
    for doc in docs:
        page_count = session.execute(
            select(func.count(DocumentPage.id)).filter(DocumentPage.document_id == doc.id)
        ).scalar()
        job = session.execute(
            select(ConversionJob).filter_by(document_id=doc.id).order_by(ConversionJob.created_at.desc())
        ).scalars().first()
        results.append({
            "document_id": doc.id,
            "title": doc.title,
            "status": job.status.value if job else None,
            "pages": page_count,
        })
    return results


def page_size_stats(pages):
    """Average rendered size of pages with a recorded file size.

    Returns None when no page has a size, otherwise a dict with the average in
    KB, the number of small pages and a classification: blank, suspicious or
    healthy.
    """
    sizes = [p.file_size for p in pages if p.file_size is not None]
    if not sizes:
        return None
    average_kb = sum(sizes) / len(sizes) / 1024
    if average_kb < BLANK_PAGE_AVG_KB:
        classification = "blank"
    elif average_kb < SUSPICIOUS_PAGE_AVG_KB:
        classification = "suspicious"
    else:
        classification = "healthy"
    return {
        "page_count": len(pages),
        "sized_pages": len(sizes),
        "total_kb": round(sum(sizes) / 1024, 2),
        "average_kb": round(average_kb, 2),
        "small_pages": len([s for s in sizes if s < SUSPICIOUS_PAGE_BYTES]),
        "classification": classification,
    }


def find_blank_documents(session, include_suspicious=False):
    """Documents whose page images are small enough to be blank renders."""
    wanted = {"blank", "suspicious"} if include_suspicious else {"blank"}
    docs = session.execute(select(Document).order_by(Document.created_at)).scalars().all()
    flagged = []
    for doc in docs:
        pages = session.execute(select(DocumentPage).filter_by(document_id=doc.id)).scalars().all()
        stats = page_size_stats(pages)
        if stats is None or stats["classification"] not in wanted:
            continue
        flagged.append({"document_id": doc.id, "filename": doc.filename, "user_id": doc.user_id, **stats})
    flagged.sort(key=lambda d: d["average_kb"])
    return flagged
