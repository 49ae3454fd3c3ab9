from contextlib import asynccontextmanager
from typing import Callable, Optional
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from lifestream.core.exceptions import ConflictError, LifeStreamError, PersistenceError
import logging

logger = logging.getLogger(__name__)

SERIALIZATION_FAILURE = "40001"


def _sqlstate(error: DBAPIError) -> Optional[str]:
    orig = getattr(error, "orig", None)
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


@asynccontextmanager
async def unit_of_work(
    db: AsyncSession,
    action: str,
    on_conflict: Optional[Callable[[], LifeStreamError]] = None,
):
    """Commit on success; roll back and translate store errors on failure.

    Domain errors pass through unchanged. ``on_conflict`` builds the error
    raised when a constraint rejects the write; without it a constraint
    violation is a PersistenceError.
    """
    try:
        yield db
        await db.commit()
    except LifeStreamError:
        await db.rollback()
        raise
    except IntegrityError as e:
        await db.rollback()
        logger.warning(f"{action}: constraint violation: {e.orig}")
        if on_conflict is not None:
            raise on_conflict()
        raise PersistenceError(f"Could not {action}")
    except DBAPIError as e:
        await db.rollback()
        if _sqlstate(e) == SERIALIZATION_FAILURE:
            logger.warning(f"{action}: serialization failure")
            if on_conflict is not None:
                raise on_conflict()
            raise ConflictError()
        logger.error(f"{action}: database error: {e}")
        raise PersistenceError(f"Could not {action}")
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"{action}: database error: {e}")
        raise PersistenceError(f"Could not {action}")


@asynccontextmanager
async def reading(action: str):
    """Translate store failures during a read into PersistenceError."""
    try:
        yield
    except SQLAlchemyError as e:
        logger.error(f"{action}: database error: {e}")
        raise PersistenceError(f"Could not {action}")
