"""
Database sessions for Celery tasks

Tasks run outside the FastAPI request cycle, so each one opens its own
session from the shared factory. The unit of work commits when the block
exits cleanly and rolls back on any exception, which is then re-raised so
Celery records the failure.
"""
import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy.orm import Session

from reviewpilot.db import database

logger = logging.getLogger(__name__)


@contextmanager
def get_celery_db_session(task_name: Optional[str] = None) -> Generator[Session, None, None]:
    """
    Yield a session bound to one task run.

    Usage:
        with get_celery_db_session("poll_account") as db:
            account = db.get(Account, account_id)
    """
    # Looked up at call time so tests can rebind the factory
    db = database.SessionLocal()
    try:
        yield db
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Rolled back {task_name or 'task'} session: {e}")
        raise
    finally:
        db.close()
