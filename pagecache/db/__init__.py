from .session import get_session, get_engine, init_db

__all__ = ["get_session", "get_engine", "init_db"]
