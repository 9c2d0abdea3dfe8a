from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from functools import lru_cache

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from er_core.infrastructure.db.engine import get_engine

SessionFactory = Callable[[], AbstractContextManager[Session]]


@lru_cache(maxsize=1)
def _default_sessionmaker() -> sessionmaker[Session]:
    return make_sessionmaker(get_engine())


def make_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


def make_session_scope(session_local: sessionmaker[Session]) -> SessionFactory:
    @contextmanager
    def _session_scope() -> Iterator[Session]:
        session: Session = session_local()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return _session_scope


@contextmanager
def session_scope() -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""
    with make_session_scope(_default_sessionmaker())() as session:
        yield session
