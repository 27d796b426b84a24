import datetime

import pytest
from fastapi.testclient import TestClient

from pagecache.api.app import create_app, get_db, get_storage_backend
from pagecache.conversion.jobs import JobManager
from pagecache.pages.store import PageStore

from conftest import grant, put_page_objects


@pytest.fixture
def client(session, storage):
    app = create_app()

    def override_db():
        yield session

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_storage_backend] = lambda: storage
    return TestClient(app)


def _as(user):
    return {"X-User-Id": user.id}


def _converted(session, storage, document, numbers=(1, 2, 3)):
    jobs = JobManager(session, storage)
    job = jobs.start(jobs.request_conversion(document.id).id)
    jobs.report_progress(job.id, len(numbers), len(numbers))
    for n, path in put_page_objects(storage, document, numbers).items():
        PageStore(session).write_page(document.id, n, path)
    return jobs.complete(job.id)


def test_requires_authentication(client, document):
    assert client.get(f"/api/documents/{document.id}/pages").status_code == 401
    assert client.get(f"/api/documents/{document.id}/pages", headers={"X-User-Id": "nobody"}).status_code == 401


def test_list_pages(client, session, storage, owner, document):
    _converted(session, storage, document)
    response = client.get(f"/api/documents/{document.id}/pages", headers=_as(owner))
    assert response.status_code == 200
    body = response.json()
    assert body["total_pages"] == 3
    assert body["pages"][0]["page_url"] == f"/api/documents/{document.id}/pages/1"
    assert body["pages"][0]["storage_path"] == f"{owner.id}/{document.id}/page-1.jpg"


def test_list_pages_before_conversion(client, session, storage, owner, document):
    response = client.get(f"/api/documents/{document.id}/pages", headers=_as(owner))
    assert response.status_code == 202
    assert response.json()["status"] == "not_converted"

    JobManager(session, storage).request_conversion(document.id)
    response = client.get(f"/api/documents/{document.id}/pages", headers=_as(owner))
    assert response.status_code == 202
    assert response.headers["Retry-After"] == "5"
    assert response.json()["status"] == "conversion_in_progress"


def test_access_rules(client, session, storage, member, admin, document):
    _converted(session, storage, document)
    url = f"/api/documents/{document.id}/pages/1?redirect=false"
    assert client.get(url, headers=_as(member)).status_code == 403
    assert client.get(url, headers=_as(admin)).status_code == 200
    grant(session, member, document)
    assert client.get(url, headers=_as(member)).status_code == 200
    assert client.get("/api/documents/missing/pages", headers=_as(admin)).status_code == 404


def test_page_signed_url_and_download(client, session, storage, owner, document):
    _converted(session, storage, document)
    response = client.get(f"/api/documents/{document.id}/pages/2?redirect=false&ttl=60", headers=_as(owner))
    assert response.status_code == 200
    signed = response.json()
    assert signed["ttl_seconds"] == 60
    assert signed["page_number"] == 2

    download = client.get(signed["url"].replace("http://testserver", ""))
    assert download.status_code == 200
    assert download.content == b"image-bytes"
    assert download.headers["content-type"] == "image/jpeg"


def test_page_redirects_by_default(client, session, storage, owner, document):
    _converted(session, storage, document)
    response = client.get(f"/api/documents/{document.id}/pages/1", headers=_as(owner), follow_redirects=False)
    assert response.status_code == 307
    assert "/storage/v1/object/sign/document-pages/" in response.headers["location"]


def test_expired_signed_url_is_rejected(client, session, storage, clock, owner, document):
    _converted(session, storage, document)
    signed = client.get(f"/api/documents/{document.id}/pages/1?redirect=false&ttl=60", headers=_as(owner)).json()
    clock.advance(61)
    assert client.get(signed["url"].replace("http://testserver", "")).status_code == 403

    fresh = client.get(f"/api/documents/{document.id}/pages/1?redirect=false&ttl=60", headers=_as(owner)).json()
    assert client.get(fresh["url"].replace("http://testserver", "")).status_code == 200


def test_missing_object_triggers_reconciliation(client, session, storage, owner, document):
    _converted(session, storage, document)
    storage.delete([f"{owner.id}/{document.id}/page-3.jpg"])

    response = client.get(f"/api/documents/{document.id}/pages/3?redirect=false", headers=_as(owner))
    assert response.status_code == 404
    body = response.json()
    assert body["error"] == "page_removed"
    assert body["reconciliation"]["deleted"] == 1
    assert PageStore(session).count_pages(document.id) == 2

    assert client.get(f"/api/documents/{document.id}/pages/3?redirect=false", headers=_as(owner)).status_code == 404


def test_convert_endpoint(client, session, owner, member, document):
    grant(session, member, document)
    assert client.post(f"/api/documents/{document.id}/convert", headers=_as(member)).status_code == 403

    first = client.post(f"/api/documents/{document.id}/convert", json={"priority": "high"}, headers=_as(owner))
    assert first.status_code == 202
    assert first.json()["status"] == "queued"
    assert first.json()["priority"] == "high"

    second = client.post(f"/api/documents/{document.id}/convert", headers=_as(owner))
    assert second.json()["job_id"] == first.json()["job_id"]

    progress = client.get(f"/api/documents/{document.id}/conversion", headers=_as(member))
    assert progress.status_code == 200
    assert progress.json()["message"] == "Waiting in conversion queue"


def test_conversion_progress_without_jobs(client, owner, document):
    assert client.get(f"/api/documents/{document.id}/conversion", headers=_as(owner)).status_code == 404


def test_reconcile_endpoint_is_admin_only(client, session, storage, owner, admin, document):
    _converted(session, storage, document)
    storage.delete([f"{owner.id}/{document.id}/page-1.jpg"])
    assert client.post(f"/api/documents/{document.id}/reconcile", headers=_as(owner)).status_code == 403

    response = client.post(f"/api/documents/{document.id}/reconcile", headers=_as(admin))
    assert response.status_code == 200
    assert response.json()["checked"] == 3
    assert response.json()["deleted"] == 1


def test_pages_still_served_after_failed_retry_and_cleanup(client, session, storage, owner, document):
    done = _converted(session, storage, document, numbers=(1, 2))
    jobs = JobManager(session, storage)
    retry = jobs.start(jobs.request_conversion(document.id).id)
    jobs.fail(retry.id, "renderer crashed")
    jobs.cleanup_old_jobs(older_than_days=7, now=done.completed_at + datetime.timedelta(days=30))

    response = client.get(f"/api/documents/{document.id}/pages", headers=_as(owner))
    assert response.status_code == 200
    assert response.json()["total_pages"] == 2


def test_missing_object_during_reconversion_asks_to_retry(client, session, storage, owner, document):
    _converted(session, storage, document)
    JobManager(session, storage).request_conversion(document.id)
    storage.delete([f"{owner.id}/{document.id}/page-2.jpg"])

    response = client.get(f"/api/documents/{document.id}/pages/2?redirect=false", headers=_as(owner))
    assert response.status_code == 202
    assert response.headers["Retry-After"] == "5"
    assert response.json()["status"] == "conversion_in_progress"
    assert PageStore(session).count_pages(document.id) == 3
