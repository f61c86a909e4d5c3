from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

# Base class for metadata models (users, file records)
# Blob tables live on their own metadata object in storage/chunked_storage.py
Base = declarative_base()


def create_db_engine(url: str) -> Engine:
    """
    Create a database engine - manages the connection pool.

    SQLite connections are shared across FastAPI's worker threads, so the
    same-thread check is turned off for sqlite URLs.
    """
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker:
    # autocommit=False: Changes require explicit commit
    # expire_on_commit=False: records stay readable after commit for responses
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def get_db(request: Request):
    """
    Dependency for getting a metadata database session.

    The session factory is built by create_app() and kept on app.state.
    The session is closed after the request completes.
    """
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()
