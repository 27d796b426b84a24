from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from ..config import POSTGRES_DSN

_engine = None
SessionLocal = sessionmaker(autoflush=False, future=True)


def get_engine():
    """Create the process-wide engine on first use."""
    global _engine
    if _engine is None:
        _engine = create_engine(POSTGRES_DSN, future=True, pool_pre_ping=True)
        SessionLocal.configure(bind=_engine)
    return _engine


def get_session():
    get_engine()
    return SessionLocal()


def init_db(engine=None):
    """Create all tables on the given engine (defaults to the configured one)."""
    from .models import Base
    Base.metadata.create_all(engine or get_engine())
