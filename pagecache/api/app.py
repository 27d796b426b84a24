"""
HTTP surface for page viewing, conversion requests and reconciliation.
"""
import logging
import mimetypes
from functools import lru_cache
from typing import Optional

from fastapi import FastAPI, Depends, Header, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from pydantic import BaseModel

from ..config import SIGNED_URL_TTL_SECONDS, SIGNED_URL_MAX_TTL_SECONDS
from ..conversion.jobs import JobManager
from ..db import get_session
from ..db.models import Document, User, JobStatus, JobPriority
from ..errors import (
    PageCacheError, AccessDenied, DocumentNotFound, PageNotFound, ObjectNotFound, JobNotFound,
    DuplicatePage, ActiveJobExists, InvalidTransition, StorageUnavailable, ConversionFailed,
    PhantomPageDetected,
)
from ..access.control import AccessControl, Principal
from ..access.signed_urls import SignedUrlIssuer
from ..pages.store import PageStore, page_metadata
from ..reconcile.reconciler import Reconciler
from ..storage import get_storage

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = 5

ERROR_STATUS = {
    AccessDenied: 403,
    DocumentNotFound: 404,
    PageNotFound: 404,
    JobNotFound: 404,
    ObjectNotFound: 404,
    DuplicatePage: 409,
    ActiveJobExists: 409,
    InvalidTransition: 409,
    ConversionFailed: 422,
    PhantomPageDetected: 404,
    StorageUnavailable: 503,
}


class ConvertRequest(BaseModel):
    priority: JobPriority = JobPriority.normal


def get_db():
    session = get_session()
    try:
        yield session
    finally:
        session.close()


@lru_cache(maxsize=1)
def get_storage_backend():
    return get_storage()


def get_principal(x_user_id: Optional[str] = Header(None, alias="X-User-Id"), db=Depends(get_db)) -> Principal:
    """Resolve the calling user. Session handling lives in front of this service."""
    if not x_user_id:
        raise AccessDenied("authentication required", status=401)
    user = db.get(User, x_user_id)
    if user is None:
        raise AccessDenied("unknown user", status=401)
    return Principal.from_user(user)


def _require_view(db, principal, document_id):
    if db.get(Document, document_id) is None:
        raise DocumentNotFound(f"document {document_id} not found", document_id=document_id)
    if not AccessControl(db).can_view(principal, document_id):
        raise AccessDenied(f"access to document {document_id} denied", document_id=document_id)


def _not_ready_response(jobs, document_id):
    progress = jobs.get_progress(document_id)
    if progress is None:
        status = "not_converted"
    elif progress["status"] == JobStatus.failed.value:
        status = "conversion_failed"
    elif progress["status"] == JobStatus.completed.value:
        # converted, but every page has since been removed
        status = "reconversion_required"
    else:
        status = "conversion_in_progress"
    return JSONResponse(
        status_code=202,
        content={"document_id": document_id, "status": status, "conversion": progress, "retry_after": RETRY_AFTER_SECONDS},
        headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
    )


def create_app() -> FastAPI:
    app = FastAPI(title="jStudyRoom page cache", version="1.0.0")

    @app.exception_handler(PageCacheError)
    async def page_cache_error_handler(request: Request, exc: PageCacheError):
        status_code = exc.context.get("status") or ERROR_STATUS.get(type(exc), 500)
        headers = {"Retry-After": str(RETRY_AFTER_SECONDS)} if exc.retryable else None
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        body = exc.to_dict()
        body.pop("status", None)
        return JSONResponse(status_code=status_code, content=body, headers=headers)

    @app.get("/api/documents/{document_id}/pages")
    def list_document_pages(document_id: str, principal: Principal = Depends(get_principal), db=Depends(get_db),
                            storage=Depends(get_storage_backend)):
        _require_view(db, principal, document_id)
        jobs = JobManager(db, storage)
        pages = PageStore(db).list_pages(document_id)
        if jobs.get_latest_completed_job(document_id) is None or not pages:
            return _not_ready_response(jobs, document_id)
        return {
            "document_id": document_id,
            "total_pages": len(pages),
            "pages": [page_metadata(p) for p in pages],
        }

    @app.get("/api/documents/{document_id}/pages/{page_number}")
    def get_document_page(document_id: str, page_number: int,
                          ttl: int = Query(SIGNED_URL_TTL_SECONDS, gt=0, le=SIGNED_URL_MAX_TTL_SECONDS),
                          redirect: bool = True,
                          principal: Principal = Depends(get_principal), db=Depends(get_db),
                          storage=Depends(get_storage_backend)):
        _require_view(db, principal, document_id)
        page = PageStore(db).get_page(document_id, page_number)
        if page is None:
            raise PageNotFound(f"page {page_number} of {document_id} not found", document_id=document_id)

        issuer = SignedUrlIssuer(AccessControl(db), storage)
        try:
            if not page.storage_path or not storage.exists(page.storage_path):
                raise ObjectNotFound(f"no object for page {page_number}", path=page.storage_path)
            signed = issuer.issue(page, principal, ttl)
        except (ObjectNotFound, PhantomPageDetected):
            report = Reconciler(db, storage).reconcile(document_id)
            if report.skipped:
                # a conversion is rewriting this document's pages
                return _not_ready_response(JobManager(db, storage), document_id)
            return JSONResponse(
                status_code=404,
                content={
                    "error": "page_removed",
                    "message": f"page {page_number} had no stored image and was removed",
                    "reconciliation": report.to_dict(),
                },
            )
        if redirect:
            return RedirectResponse(signed.url, status_code=307)
        return signed.to_dict()

    @app.post("/api/documents/{document_id}/convert", status_code=202)
    def request_document_conversion(document_id: str, body: Optional[ConvertRequest] = None,
                                    principal: Principal = Depends(get_principal), db=Depends(get_db),
                                    storage=Depends(get_storage_backend)):
        if db.get(Document, document_id) is None:
            raise DocumentNotFound(f"document {document_id} not found", document_id=document_id)
        if not AccessControl(db).can_manage(principal, document_id):
            raise AccessDenied(f"only the owner or an admin may convert {document_id}", document_id=document_id)
        jobs = JobManager(db, storage)
        job = jobs.request_conversion(document_id, priority=(body or ConvertRequest()).priority)
        return jobs.get_progress(job.document_id)

    @app.get("/api/documents/{document_id}/conversion")
    def get_conversion_progress(document_id: str, principal: Principal = Depends(get_principal),
                                db=Depends(get_db), storage=Depends(get_storage_backend)):
        _require_view(db, principal, document_id)
        progress = JobManager(db, storage).get_progress(document_id)
        if progress is None:
            raise JobNotFound(f"document {document_id} has no conversion jobs", document_id=document_id)
        return progress

    @app.post("/api/documents/{document_id}/reconcile")
    def reconcile_document(document_id: str, principal: Principal = Depends(get_principal),
                           db=Depends(get_db), storage=Depends(get_storage_backend)):
        if not principal.is_admin:
            raise AccessDenied("admin role required")
        if db.get(Document, document_id) is None:
            raise DocumentNotFound(f"document {document_id} not found", document_id=document_id)
        return Reconciler(db, storage).reconcile(document_id).to_dict()

    @app.get("/storage/v1/object/sign/{bucket}/{path:path}")
    def serve_signed_object(bucket: str, path: str, token: str = "", expires: int = 0,
                            storage=Depends(get_storage_backend)):
        verify = getattr(storage, "verify_signed_url", None)
        if verify is None:
            raise ObjectNotFound("signed objects are served by the storage provider")
        if not verify(bucket, path, token, expires):
            raise AccessDenied("signed URL is invalid or expired")
        data = storage.download(path, bucket=bucket)
        media_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
        return Response(content=data, media_type=media_type)

    return app


app = create_app()
