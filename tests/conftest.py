import io

import pytest
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from pagecache.db.models import Base, User, Document, UserRole, BookShopItem, MyJstudyroomItem
from pagecache.storage import LocalStorage


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    Session = sessionmaker(bind=engine, autoflush=False, future=True)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage(tmp_path, clock):
    return LocalStorage(root=tmp_path / "storage", secret="test-secret", base_url="http://testserver", clock=clock)


@pytest.fixture
def owner(session):
    user = User(email="owner@example.com", role=UserRole.platform_user)
    session.add(user)
    session.commit()
    return user


@pytest.fixture
def admin(session):
    user = User(email="admin@example.com", role=UserRole.admin)
    session.add(user)
    session.commit()
    return user


@pytest.fixture
def member(session):
    user = User(email="member@example.com", role=UserRole.member)
    session.add(user)
    session.commit()
    return user


@pytest.fixture
def document(session, owner):
    doc = Document(
        user_id=owner.id,
        title="Organic Chemistry",
        filename="chem.pdf",
        content_type="application/pdf",
        storage_path=f"{owner.id}/chem.pdf",
    )
    session.add(doc)
    session.commit()
    return doc


def grant(session, user, document):
    """Give a member read access through a bookshop item."""
    item = BookShopItem(document_id=document.id, title=document.title)
    session.add(item)
    session.commit()
    session.add(MyJstudyroomItem(user_id=user.id, bookshop_item_id=item.id))
    session.commit()


def make_pdf(pages=3):
    """A small multi-page PDF rendered with Pillow."""
    images = [Image.new("RGB", (200, 260), color=(255, 255 - i * 40, 255)) for i in range(pages)]
    buf = io.BytesIO()
    images[0].save(buf, format="PDF", save_all=True, append_images=images[1:])
    return buf.getvalue()


def put_page_objects(storage, document, page_numbers, fmt="jpg"):
    from pagecache.pages.store import page_storage_path
    paths = {}
    for n in page_numbers:
        path = page_storage_path(document.user_id, document.id, n, fmt)
        storage.put(path, b"image-bytes", content_type="image/jpeg")
        paths[n] = path
    return paths
