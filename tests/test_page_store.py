import datetime

import pytest

from pagecache.db.models import utcnow
from pagecache.errors import DuplicatePage
from pagecache.pages.store import PageStore, page_storage_path, looks_like_url, page_metadata


def test_page_storage_path_is_one_based():
    assert page_storage_path("u1", "d1", 1) == "u1/d1/page-1.jpg"
    assert page_storage_path("u1", "d1", 12, "png") == "u1/d1/page-12.png"
    with pytest.raises(ValueError):
        page_storage_path("u1", "d1", 0)


def test_looks_like_url():
    assert looks_like_url("https://x.supabase.co/storage/v1/object/sign/a")
    assert looks_like_url("/api/documents/d1/pages/1")
    assert not looks_like_url("u1/d1/page-1.jpg")


def test_write_and_read_page(session, document):
    store = PageStore(session)
    path = page_storage_path(document.user_id, document.id, 1)
    page = store.write_page(document.id, 1, path, file_size=1234, quality=85, dpi=150)

    fetched = store.get_page(document.id, 1)
    assert fetched.id == page.id
    assert fetched.storage_path == path
    assert fetched.page_url == f"/api/documents/{document.id}/pages/1"
    assert fetched.expires_at > utcnow()
    assert store.count_pages(document.id) == 1


def test_write_page_rejects_bad_input(session, document):
    store = PageStore(session)
    with pytest.raises(ValueError):
        store.write_page(document.id, 0, "u/d/page-0.jpg")
    with pytest.raises(ValueError):
        store.write_page(document.id, 1, "")
    with pytest.raises(ValueError):
        store.write_page(document.id, 1, "https://cdn.example.com/page-1.jpg?token=abc")
    with pytest.raises(ValueError):
        store.write_page(document.id, 1, "u/d/page-1.gif", format="gif")
    assert store.count_pages(document.id) == 0


def test_same_generation_rewrite(session, document):
    store = PageStore(session)
    store.write_page(document.id, 1, "u/d/page-1.jpg", generation=1)
    # idempotent when the path matches
    store.write_page(document.id, 1, "u/d/page-1.jpg", generation=1, file_size=10)
    with pytest.raises(DuplicatePage):
        store.write_page(document.id, 1, "u/d/other-1.jpg", generation=1)
    assert store.get_page(document.id, 1).storage_path == "u/d/page-1.jpg"


def test_newer_generation_replaces_and_older_is_rejected(session, document):
    store = PageStore(session)
    store.write_page(document.id, 1, "u/d/page-1.jpg", generation=1)
    store.write_page(document.id, 1, "u/d/page-1.png", format="png", generation=2)
    page = store.get_page(document.id, 1)
    assert page.generation == 2
    assert page.format == "png"
    with pytest.raises(DuplicatePage):
        store.write_page(document.id, 1, "u/d/page-1.jpg", generation=1)


def test_list_and_delete_pages(session, document):
    store = PageStore(session)
    for n in (3, 1, 2):
        store.write_page(document.id, n, f"u/d/page-{n}.jpg")
    assert [p.page_number for p in store.list_pages(document.id)] == [1, 2, 3]

    assert store.delete_pages(document.id, [2, 3, 3]) == 2
    assert store.delete_pages(document.id, []) == 0
    assert [p.page_number for p in store.list_pages(document.id)] == [1]


def test_prune_generations(session, document):
    store = PageStore(session)
    store.write_page(document.id, 1, "u/d/page-1.jpg", generation=2)
    store.write_page(document.id, 2, "u/d/page-2.jpg", generation=1)
    assert store.prune_generations(document.id, 2) == 1
    assert [p.page_number for p in store.list_pages(document.id)] == [1]


def test_expiry_listing_and_refresh(session, document):
    store = PageStore(session, cache_ttl_days=7)
    store.write_page(document.id, 1, "u/d/page-1.jpg")
    later = utcnow() + datetime.timedelta(days=8)
    assert store.list_expired_documents() == []
    assert store.list_expired_documents(now=later) == [document.id]

    page = store.get_page(document.id, 1)
    assert page_metadata(page, now=later)["expired"] is True
    assert page_metadata(page)["expired"] is False

    page.expires_at = utcnow() - datetime.timedelta(days=1)
    session.commit()
    assert store.list_expired_documents() == [document.id]
    assert store.refresh_expiry(document.id) == 1
    assert store.list_expired_documents() == []
