import pytest

from app.core.exceptions import TransientError, ValidationError
from app.models.conversion import Conversion
from app.tasks import conversion_tasks
from app.tasks.conversion_tasks import record_conversion_task

from conftest import AFFILIATE_ID, REFERRED_ID

PAYLOAD = {
    "affiliate_user_id": AFFILIATE_ID,
    "referred_user_id": REFERRED_ID,
    "conversion_type": "subscription",
    "conversion_value": "200",
    "reference_id": "sub-1",
    "reference_type": "subscription",
}


@pytest.fixture
def task_sessions(monkeypatch, session_factory):
    monkeypatch.setattr(conversion_tasks, "SessionLocal", session_factory)


def test_records_conversion(db, rates, task_sessions):
    result = record_conversion_task.apply(args=[PAYLOAD], kwargs={"created_by": "billing"}).get()

    assert result["was_existing"] is False
    assert result["commission_amount"] == "30.00"
    stored = db.query(Conversion).filter(Conversion.id == result["conversion_id"]).one()
    assert stored.metadata_["created_by"] == "billing"


def test_redelivery_is_idempotent(db, rates, task_sessions):
    first = record_conversion_task.apply(args=[PAYLOAD]).get()
    second = record_conversion_task.apply(args=[PAYLOAD]).get()

    assert second["was_existing"] is True
    assert second["conversion_id"] == first["conversion_id"]
    assert db.query(Conversion).count() == 1


def test_invalid_payload_fails_without_retry(db, rates, task_sessions):
    result = record_conversion_task.apply(args=[{**PAYLOAD, "conversion_value": "-1"}])

    assert result.failed()
    assert isinstance(result.result, ValidationError)
    assert db.query(Conversion).count() == 0


def test_retries_only_transient_errors():
    assert record_conversion_task.autoretry_for == (TransientError,)
    assert record_conversion_task.max_retries >= 1
