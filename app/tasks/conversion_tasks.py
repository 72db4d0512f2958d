import logging

from celery import Task
from sqlalchemy.orm import Session

from app.tasks.celery_app import celery_app
from app.core.config import settings
from app.core.database import SessionLocal
from app.core.exceptions import TransientError
from app.services.conversion_service import ConversionService

logger = logging.getLogger(__name__)


class DatabaseTask(Task):
    """Base task with database session"""
    _db = None

    @property
    def db(self) -> Session:
        if self._db is None:
            self._db = SessionLocal()
        return self._db

    def after_return(self, *args, **kwargs):
        if self._db is not None:
            self._db.close()
            self._db = None


@celery_app.task(
    base=DatabaseTask,
    bind=True,
    autoretry_for=(TransientError,),
    retry_backoff=True,
    retry_jitter=True,
    max_retries=settings.CONVERSION_TASK_MAX_RETRIES,
)
def record_conversion_task(self, payload: dict, created_by: str = None):
    """Record a conversion from a booking, purchase or subscription event.

    Retried on transient store errors; recording is idempotent on the
    reference, so a retry never produces a second row.
    """
    if self.request.retries:
        logger.warning(
            "Retrying conversion for reference %s/%s (attempt %d)",
            payload.get("reference_type"), payload.get("reference_id"), self.request.retries
        )

    conversion, was_existing = ConversionService.record_conversion(
        self.db, payload, created_by=created_by
    )

    return {
        "conversion_id": conversion.id,
        "was_existing": was_existing,
        "commission_amount": str(conversion.commission_amount),
    }
