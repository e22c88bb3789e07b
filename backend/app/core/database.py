import logging
from typing import Callable, Generator, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

_connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}

engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,   # checks stale connections
    connect_args=_connect_args,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class ConcurrentModificationError(RuntimeError):
    """Raised when an atomic unit keeps losing races after all retries."""

    def __init__(self, label: str, attempts: int) -> None:
        super().__init__(f"{label}: concurrent modification persisted after {attempts} attempts")
        self.label = label
        self.attempts = attempts


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def run_atomic(
    db: Session,
    operation: Callable[[], T],
    *,
    attempts: int,
    label: str,
    retry_on: tuple[type[BaseException], ...] = (StaleDataError,),
) -> T:
    """
    Run `operation` and commit it as one unit. Conflicts listed in `retry_on`
    roll back and re-run the whole operation; anything else rolls back and
    propagates unchanged.
    """
    attempts = max(int(attempts), 1)
    last_exc: BaseException | None = None
    for attempt in range(1, attempts + 1):
        try:
            result = operation()
            db.commit()
            return result
        except retry_on as exc:
            db.rollback()
            last_exc = exc
            logger.warning(
                "db.atomic_conflict",
                extra={"label": label, "attempt": attempt, "error": str(exc)},
            )
        except Exception:
            db.rollback()
            raise
    raise ConcurrentModificationError(label, attempts) from last_exc
