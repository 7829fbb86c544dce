import uuid
import logging
from contextlib import asynccontextmanager

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from messaging.exceptions import InvalidArgument, TransientStoreError

logger = logging.getLogger(__name__)


def ensure_id(value: str, label: str) -> str:
    try:
        uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise InvalidArgument(f"Invalid {label} ID")
    return str(value)


@asynccontextmanager
async def write_transaction(db: AsyncSession):
    """Commit on success, roll back on any error.

    Store failures surface as TransientStoreError. IntegrityError is
    re-raised untouched so callers can resolve uniqueness races.
    """
    try:
        yield
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise
    except DBAPIError as exc:
        await db.rollback()
        logger.error("Store write failed: %s", exc)
        raise TransientStoreError() from exc
    except Exception:
        await db.rollback()
        raise
