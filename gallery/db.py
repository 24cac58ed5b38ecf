"""SQLAlchemy engine and session factory."""

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker


class Base(DeclarativeBase):
    pass


def make_engine(database_url: str) -> Engine:
    connect_args: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        # Worker threads and request handlers share the file.
        connect_args["check_same_thread"] = False
    return create_engine(database_url, connect_args=connect_args)


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    # Rows handed out by the store stay readable after their session closes.
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def create_tables(engine: Engine) -> None:
    """Create all job and index tables if they do not exist."""
    # Import models so Base.metadata includes them before create_all().
    import gallery.models.directory_index  # noqa: F401
    import gallery.models.job  # noqa: F401

    Base.metadata.create_all(bind=engine)
