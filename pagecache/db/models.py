from sqlalchemy import Column, Integer, String, DateTime, Text, Enum, BigInteger, Boolean, ForeignKey, Index, UniqueConstraint, Numeric, text
from sqlalchemy.orm import declarative_base
import enum
import datetime
import uuid

Base = declarative_base()


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def new_id():
    return str(uuid.uuid4())


class UserRole(str, enum.Enum):
    admin = "admin"
    platform_user = "platform_user"
    member = "member"


class JobStatus(str, enum.Enum):
    queued = "queued"
    processing = "processing"
    completed = "completed"
    failed = "failed"


ACTIVE_STATUSES = (JobStatus.queued, JobStatus.processing)
TERMINAL_STATUSES = (JobStatus.completed, JobStatus.failed)


class JobStage(str, enum.Enum):
    queued = "queued"
    downloading = "downloading"
    converting = "converting"
    uploading = "uploading"
    finalizing = "finalizing"
    completed = "completed"
    failed = "failed"


class JobPriority(str, enum.Enum):
    high = "high"
    normal = "normal"
    low = "low"


# ordering used when claiming queued work
PRIORITY_RANK = {JobPriority.high: 0, JobPriority.normal: 1, JobPriority.low: 2}


class User(Base):
    __tablename__ = "users"
    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String, nullable=False, unique=True)
    role = Column(Enum(UserRole), nullable=False, default=UserRole.platform_user)
    created_at = Column(DateTime, default=utcnow)


class Document(Base):
    __tablename__ = "documents"
    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    title = Column(String, nullable=False)
    filename = Column(String, nullable=False)
    content_type = Column(String, nullable=False, default="application/pdf")
    storage_path = Column(Text, nullable=False)
    file_size = Column(BigInteger, nullable=True)
    page_count = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    @property
    def is_pdf(self):
        return "pdf" in (self.content_type or "").lower()


class ConversionJob(Base):
    """One attempt to render a document into page images."""
    __tablename__ = "conversion_jobs"
    __table_args__ = (
        # at most one queued/processing job per document
        Index(
            "uq_conversion_jobs_active_document",
            "document_id",
            unique=True,
            postgresql_where=text("status IN ('queued', 'processing')"),
            sqlite_where=text("status IN ('queued', 'processing')"),
        ),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    document_id = Column(String(36), ForeignKey("documents.id"), nullable=False, index=True)
    status = Column(Enum(JobStatus), nullable=False, default=JobStatus.queued)
    stage = Column(Enum(JobStage), nullable=False, default=JobStage.queued)
    priority = Column(Enum(JobPriority), nullable=False, default=JobPriority.normal)
    priority_rank = Column(Integer, nullable=False, default=1)
    progress = Column(Integer, nullable=False, default=0)
    total_pages = Column(Integer, nullable=True)
    processed_pages = Column(Integer, nullable=False, default=0)
    generation = Column(Integer, nullable=False, default=1)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_active(self):
        return self.status in ACTIVE_STATUSES


class DocumentPage(Base):
    """A rendered page. storage_path is the only persisted location."""
    __tablename__ = "document_pages"
    __table_args__ = (
        UniqueConstraint("document_id", "page_number", name="uq_document_pages_document_page"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    document_id = Column(String(36), ForeignKey("documents.id"), nullable=False, index=True)
    page_number = Column(Integer, nullable=False)
    storage_path = Column(Text, nullable=True)
    file_size = Column(BigInteger, nullable=True)
    format = Column(String(8), nullable=False, default="jpg")
    quality = Column(Integer, nullable=True)
    dpi = Column(Integer, nullable=True)
    generation_method = Column(String, nullable=True)
    generation = Column(Integer, nullable=False, default=1)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def page_url(self):
        # derived on every read, signed URLs are issued per request
        return f"/api/documents/{self.document_id}/pages/{self.page_number}"

    def is_expired(self, now=None):
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utcnow())


class BookShopItem(Base):
    __tablename__ = "bookshop_items"
    id = Column(String(36), primary_key=True, default=new_id)
    document_id = Column(String(36), ForeignKey("documents.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    price = Column(Numeric(10, 2), nullable=True)
    is_published = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)


class MyJstudyroomItem(Base):
    """A member's purchased or admin-assigned bookshop item."""
    __tablename__ = "my_jstudyroom_items"
    __table_args__ = (
        UniqueConstraint("user_id", "bookshop_item_id", name="uq_my_jstudyroom_user_item"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    bookshop_item_id = Column(String(36), ForeignKey("bookshop_items.id"), nullable=False)
    added_at = Column(DateTime, default=utcnow)
