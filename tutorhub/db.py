import logging
import time
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from tutorhub.config import settings
from tutorhub.request_context import current_endpoint


_IS_SQLITE = settings.database_url.startswith('sqlite')
SQLITE_BUSY_TIMEOUT_MS = 5000
SLOW_QUERY_SQL_CHARS = 500

engine = create_engine(
    settings.database_url,
    connect_args={'check_same_thread': False} if _IS_SQLITE else {},
    pool_pre_ping=not _IS_SQLITE,
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

_slow_logger = logging.getLogger('tutorhub.db.slow_query')


if _IS_SQLITE:
    @event.listens_for(engine, 'connect')
    def _sqlite_pragmas(dbapi_connection, connection_record):
        # Request threads and the scheduler thread write to the same file.
        cursor = dbapi_connection.cursor()
        cursor.execute(f'PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_MS}')
        cursor.close()


@event.listens_for(engine, 'before_cursor_execute')
def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    context._query_start_time = time.perf_counter()


@event.listens_for(engine, 'after_cursor_execute')
def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    started = getattr(context, '_query_start_time', None)
    if started is None:
        return
    duration_ms = (time.perf_counter() - started) * 1000.0
    if duration_ms < settings.db_slow_query_ms:
        return
    _slow_logger.warning(
        'slow_query duration_ms=%.2f endpoint=%s executemany=%s sql=%s',
        duration_ms,
        current_endpoint.get(),
        bool(executemany),
        ' '.join((statement or '').split())[:SLOW_QUERY_SQL_CHARS],
    )


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(label: str = 'background'):
    """Session for work outside a request; `label` tags its slow-query logs."""
    token = current_endpoint.set(label)
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()
        current_endpoint.reset(token)
