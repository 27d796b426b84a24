"""Register an original file: store it in the documents bucket and record it."""
import logging
import mimetypes
from pathlib import Path

import pdfplumber

from ..config import DOCUMENTS_BUCKET
from ..db.models import Document, new_id

logger = logging.getLogger(__name__)


def count_pdf_pages(file_path) -> int:
    """Open the PDF once so unreadable files are refused before upload."""
    with pdfplumber.open(file_path) as pdf:
        return len(pdf.pages)


def document_storage_path(user_id: str, document_id: str, filename: str) -> str:
    return f"{user_id}/{document_id}/{filename}"


def ingest_document(session, storage, user_id: str, file_path: str, title: str = None) -> Document:
    """Upload the original file and create its `documents` row.

    PDFs get their page count recorded; other content types are stored as-is
    and fail at conversion time.
    """
    path = Path(file_path)
    content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    page_count = count_pdf_pages(path) if "pdf" in content_type else None

    document_id = new_id()
    storage_path = document_storage_path(user_id, document_id, path.name)
    storage.put(storage_path, path.read_bytes(), content_type=content_type, bucket=DOCUMENTS_BUCKET)

    doc = Document(
        id=document_id,
        user_id=user_id,
        title=title or path.stem,
        filename=path.name,
        content_type=content_type,
        storage_path=storage_path,
        file_size=path.stat().st_size,
        page_count=page_count,
    )
    session.add(doc)
    session.commit()
    logger.info(f"Ingested {path.name} as {document_id} ({page_count or 0} pages)")
    return doc
