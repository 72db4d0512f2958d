from datetime import timedelta
from decimal import Decimal

import pytest

from app.core.exceptions import InvalidStateTransitionError, NotFoundError, ValidationError
from app.models.conversion import Conversion, ConversionStatus
from app.services.commission_rate_service import CommissionRateService
from app.services.conversion_service import ConversionService

from conftest import AFFILIATE_ID, REFERRED_ID


def booking(**overrides):
    payload = {
        "affiliate_user_id": AFFILIATE_ID,
        "referred_user_id": REFERRED_ID,
        "conversion_type": "booking",
        "conversion_value": Decimal("1000"),
        "reference_id": "appt-1",
        "reference_type": "appointment",
    }
    payload.update(overrides)
    return payload


class TestRecordConversion:
    def test_new_conversion_is_pending_with_commission(self, db, rates):
        conversion, was_existing = ConversionService.record_conversion(db, booking(), resolver=rates)

        assert was_existing is False
        assert conversion.status == ConversionStatus.PENDING
        assert conversion.commission_rate_percent == Decimal("10")
        assert conversion.commission_amount == Decimal("100.00")
        assert conversion.paid_at is None

    def test_commission_rounds_half_away_from_zero(self, db, rates):
        conversion, _ = ConversionService.record_conversion(
            db, booking(conversion_value=Decimal("1999.99")), resolver=rates
        )
        assert conversion.commission_amount == Decimal("200.00")

    def test_same_idempotency_key_returns_existing_row(self, db, rates):
        first, first_existing = ConversionService.record_conversion(db, booking(), resolver=rates)
        second, second_existing = ConversionService.record_conversion(db, booking(), resolver=rates)

        assert first_existing is False
        assert second_existing is True
        assert second.id == first.id
        assert db.query(Conversion).count() == 1

    def test_retry_returns_row_unchanged_even_if_value_differs(self, db, rates):
        first, _ = ConversionService.record_conversion(db, booking(), resolver=rates)
        again, was_existing = ConversionService.record_conversion(
            db, booking(conversion_value=Decimal("5000")), resolver=rates
        )
        assert was_existing is True
        assert again.id == first.id
        assert again.conversion_value == Decimal("1000")

    @pytest.mark.parametrize("field, value", [
        ("reference_id", "appt-2"),
        ("reference_type", "order"),
        ("referred_user_id", "someone-else-0000"),
        ("conversion_type", "subscription"),
    ])
    def test_any_key_difference_creates_a_new_row(self, db, rates, field, value):
        ConversionService.record_conversion(db, booking(), resolver=rates)
        _, was_existing = ConversionService.record_conversion(db, booking(**{field: value}), resolver=rates)

        assert was_existing is False
        assert db.query(Conversion).count() == 2

    def test_without_reference_there_is_no_deduplication(self, db, rates):
        payload = booking(reference_id=None, reference_type=None)
        ConversionService.record_conversion(db, payload, resolver=rates)
        _, was_existing = ConversionService.record_conversion(db, payload, resolver=rates)

        assert was_existing is False
        assert db.query(Conversion).count() == 2

    def test_partial_reference_is_stored_but_not_deduplicated(self, db, rates):
        payload = booking(reference_id="order-42", reference_type=None)
        first, _ = ConversionService.record_conversion(db, payload, resolver=rates)
        _, was_existing = ConversionService.record_conversion(db, payload, resolver=rates)
        db.expire_all()

        stored = ConversionService.get_conversion(db, first.id)
        assert stored.reference_id == "order-42"
        assert stored.reference_type is None
        assert was_existing is False
        assert db.query(Conversion).count() == 2

    def test_rate_is_snapshotted(self, db, rates):
        conversion, _ = ConversionService.record_conversion(db, booking(), resolver=rates)
        CommissionRateService.update_rate(
            db, {"conversion_type": "booking", "rate_percent": Decimal("50")}, resolver=rates
        )
        db.expire_all()

        stored = ConversionService.get_conversion(db, conversion.id)
        assert stored.commission_rate_percent == Decimal("10")
        assert stored.commission_amount == Decimal("100.00")

    def test_missing_rate_records_zero_commission(self, db, rates):
        conversion, _ = ConversionService.record_conversion(
            db, booking(conversion_type="event_ticket_purchase"), resolver=rates
        )
        assert conversion.commission_rate_percent == Decimal("0")
        assert conversion.commission_amount == Decimal("0.00")

    def test_metadata_is_kept_and_stamped(self, db, rates):
        conversion, _ = ConversionService.record_conversion(
            db,
            booking(metadata={"hospital": "h-1"}, affiliate_code="MT12345678", referral_source="email"),
            created_by="booking-service",
            resolver=rates
        )
        assert conversion.metadata_ == {"hospital": "h-1", "created_by": "booking-service"}
        assert conversion.affiliate_code == "MT12345678"
        assert conversion.referral_source == "email"

    @pytest.mark.parametrize("overrides", [
        {"conversion_value": Decimal("-1")},
        {"conversion_value": "NaN"},
        {"conversion_value": "Infinity"},
        {"conversion_value": "abc"},
        {"conversion_type": "donation"},
        {"affiliate_user_id": ""},
        {"referred_user_id": None},
        {"conversion_type": None},
        {"affiliate_code": "bogus"},
        {"referred_user_id": AFFILIATE_ID},
        {"conversion_value": Decimal("10000000000")},
        {"reference_type": "x" * 51},
        {"referral_source": "x" * 51},
        {"affiliate_code": "MT" + "A" * 19},
    ])
    def test_invalid_input_rejected_before_any_write(self, db, rates, overrides):
        with pytest.raises(ValidationError):
            ConversionService.record_conversion(db, booking(**overrides), resolver=rates)
        assert db.query(Conversion).count() == 0

    def test_missing_value_defaults_to_zero(self, db, rates):
        payload = booking()
        del payload["conversion_value"]
        conversion, _ = ConversionService.record_conversion(db, payload, resolver=rates)
        assert conversion.conversion_value == Decimal("0")
        assert conversion.commission_amount == Decimal("0")


class TestConfirmConversion:
    def test_pending_becomes_confirmed(self, db, rates):
        conversion, _ = ConversionService.record_conversion(db, booking(), resolver=rates)
        confirmed = ConversionService.confirm_conversion(db, conversion.id)

        assert confirmed.status == ConversionStatus.CONFIRMED
        assert confirmed.confirmed_at is not None

    def test_confirming_twice_conflicts(self, db, make_conversion):
        conversion = make_conversion()
        with pytest.raises(InvalidStateTransitionError):
            ConversionService.confirm_conversion(db, conversion.id)

    def test_unknown_conversion(self, db):
        with pytest.raises(NotFoundError):
            ConversionService.confirm_conversion(db, "missing")


class TestListingAndStats:
    def test_list_filters(self, db, make_conversion):
        make_conversion(value="100")
        make_conversion(value="50", conversion_type="subscription", confirm=False)
        make_conversion(value="10", affiliate_user_id="other-affiliate-0000")

        assert len(ConversionService.list_conversions(db, AFFILIATE_ID)) == 2
        subs = ConversionService.list_conversions(db, AFFILIATE_ID, conversion_type="subscription")
        assert [c.commission_amount for c in subs] == [Decimal("7.50")]
        pending = ConversionService.list_conversions(db, AFFILIATE_ID, status="pending")
        assert len(pending) == 1
        assert len(ConversionService.list_conversions(db, AFFILIATE_ID, limit=1)) == 1

    def test_list_rejects_bad_filters(self, db):
        with pytest.raises(ValidationError):
            ConversionService.list_conversions(db, AFFILIATE_ID, status="refunded")
        with pytest.raises(ValidationError):
            ConversionService.list_conversions(db, AFFILIATE_ID, limit=0)

    def test_stats(self, db, make_conversion):
        make_conversion(value="100")
        make_conversion(value="200")
        make_conversion(value="300", confirm=False)

        stats = ConversionService.get_affiliate_stats(db, AFFILIATE_ID)

        assert stats.total_referrals == 3
        assert stats.total_earnings == Decimal("60.00")
        assert stats.current_month_referrals == 3
        assert stats.conversion_rate == 67
        assert sorted(item.status for item in stats.referral_history) == ["completed", "completed", "pending"]

    def test_stats_for_affiliate_without_conversions(self, db):
        stats = ConversionService.get_affiliate_stats(db, "nobody-00000000")
        assert stats.total_referrals == 0
        assert stats.conversion_rate == 0
        assert stats.referral_history == []


class TestAttribution:
    def test_referred_user_is_credited_to_latest_signup(self, db, make_conversion):
        earlier = make_conversion(value="0", conversion_type="signup", affiliate_user_id="first-affiliate-00")
        make_conversion(value="0", conversion_type="signup")
        make_conversion(value="100", affiliate_user_id="booking-only-0000")
        earlier.created_at = earlier.created_at - timedelta(days=30)
        db.commit()

        assert ConversionService.find_affiliate_for_referred_user(db, REFERRED_ID) == AFFILIATE_ID

    def test_referred_user_without_signup(self, db, make_conversion):
        make_conversion(value="100")
        assert ConversionService.find_affiliate_for_referred_user(db, REFERRED_ID) is None
        assert ConversionService.find_affiliate_for_referred_user(db, "stranger-0000000") is None

    def test_affiliate_found_by_code(self, db, make_conversion):
        make_conversion(affiliate_code="MTC1F90AE7")
        assert ConversionService.find_affiliate_by_code(db, "MTC1F90AE7") == AFFILIATE_ID

    @pytest.mark.parametrize("code", ["MT00000000", "bogus", ""])
    def test_unknown_or_malformed_code(self, db, make_conversion, code):
        make_conversion(affiliate_code="MTC1F90AE7")
        assert ConversionService.find_affiliate_by_code(db, code) is None
