import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import NamedTuple, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.config import settings
from app.core.database import store_errors
from app.core.exceptions import InvalidStateTransitionError, NotFoundError, ValidationError
from app.core.money import ZERO, percent_of, round_money
from app.models.commission_rate import ConversionType
from app.models.conversion import Conversion, ConversionStatus
from app.schemas.affiliate import (
    AffiliateStats,
    ConversionCreate,
    ReferralHistoryItem,
)
from app.schemas.base import parse_request
from app.services.audit_service import AuditService
from app.services.commission_rate_service import (
    CommissionRateResolver,
    coerce_conversion_type,
    get_rate_resolver,
)
from app.services.referral_codes import is_valid_referral_code_format

logger = logging.getLogger(__name__)

# Dashboard wording for conversion statuses
HISTORY_STATUS_LABELS = {
    ConversionStatus.PENDING: "pending",
    ConversionStatus.CONFIRMED: "completed",
    ConversionStatus.PAID: "rewarded",
}


class RecordedConversion(NamedTuple):
    conversion: Conversion
    was_existing: bool


def calculate_commission_amount(conversion_value: Decimal, rate_percent: Decimal) -> Decimal:
    """value x rate / 100, rounded to cents with ties away from zero."""
    amount = percent_of(conversion_value, rate_percent)
    return amount if amount > ZERO else ZERO


class ConversionService:
    @staticmethod
    def find_by_idempotency_key(db: Session, request: ConversionCreate) -> Optional[Conversion]:
        return db.query(Conversion).filter(
            Conversion.affiliate_user_id == request.affiliate_user_id,
            Conversion.referred_user_id == request.referred_user_id,
            Conversion.conversion_type == request.conversion_type.value,
            Conversion.reference_id == request.reference_id,
            Conversion.reference_type == request.reference_type
        ).first()

    @staticmethod
    def find_affiliate_for_referred_user(db: Session, referred_user_id: str) -> Optional[str]:
        """Affiliate credited with the referred user's most recent signup."""
        with store_errors(db, "attribute referred user"):
            signup = db.query(Conversion.affiliate_user_id).filter(
                Conversion.referred_user_id == referred_user_id,
                Conversion.conversion_type == ConversionType.SIGNUP.value
            ).order_by(Conversion.created_at.desc()).first()
        return signup.affiliate_user_id if signup else None

    @staticmethod
    def find_affiliate_by_code(db: Session, affiliate_code: str) -> Optional[str]:
        if not is_valid_referral_code_format(affiliate_code or ""):
            return None
        with store_errors(db, "attribute affiliate code"):
            conversion = db.query(Conversion.affiliate_user_id).filter(
                Conversion.affiliate_code == affiliate_code
            ).order_by(Conversion.created_at.desc()).first()
        return conversion.affiliate_user_id if conversion else None

    @staticmethod
    def record_conversion(
        db: Session,
        request: Union[ConversionCreate, dict],
        created_by: Optional[str] = None,
        resolver: Optional[CommissionRateResolver] = None
    ) -> RecordedConversion:
        """Record a referral conversion once per idempotency key.

        Safe to retry: a repeated call with the same affiliate, referred
        user, type and reference returns the stored row unchanged.
        """
        request = parse_request(ConversionCreate, request)
        resolver = resolver or get_rate_resolver()

        if request.has_reference:
            with store_errors(db, "look up conversion"):
                existing = ConversionService.find_by_idempotency_key(db, request)
            if existing:
                logger.info(
                    "Conversion already recorded id=%s reference=%s/%s",
                    existing.id, request.reference_type, request.reference_id
                )
                return RecordedConversion(existing, True)

        conversion_value = round_money(request.conversion_value)
        rate_percent = resolver.get_rate(db, request.conversion_type)
        commission_amount = calculate_commission_amount(conversion_value, rate_percent)

        metadata = dict(request.metadata)
        if created_by:
            metadata["created_by"] = created_by

        conversion = Conversion(
            affiliate_user_id=request.affiliate_user_id,
            referred_user_id=request.referred_user_id,
            conversion_type=request.conversion_type.value,
            conversion_value=conversion_value,
            commission_rate_percent=rate_percent,
            commission_amount=commission_amount,
            status=ConversionStatus.PENDING,
            reference_id=request.reference_id,
            reference_type=request.reference_type,
            affiliate_code=request.affiliate_code,
            referral_source=request.referral_source,
            metadata_=metadata
        )

        with store_errors(db, "record conversion"):
            try:
                db.add(conversion)
                db.commit()
            except IntegrityError:
                # Lost the insert race against an identical request
                db.rollback()
                existing = ConversionService.find_by_idempotency_key(db, request) if request.has_reference else None
                if existing is None:
                    raise
                logger.info("Conversion recorded concurrently id=%s", existing.id)
                return RecordedConversion(existing, True)

        logger.info(
            "Recorded conversion id=%s affiliate=%s type=%s value=%s rate=%s%% commission=%s",
            conversion.id, conversion.affiliate_user_id, conversion.conversion_type,
            conversion_value, rate_percent, commission_amount
        )
        return RecordedConversion(conversion, False)

    @staticmethod
    def get_conversion(db: Session, conversion_id: str) -> Conversion:
        with store_errors(db, "get conversion"):
            conversion = db.query(Conversion).filter(Conversion.id == conversion_id).first()
        if not conversion:
            raise NotFoundError("Conversion not found", details={"conversion_id": conversion_id})
        return conversion

    @staticmethod
    def confirm_conversion(db: Session, conversion_id: str, user_id: Optional[str] = None) -> Conversion:
        """Promote a pending conversion to confirmed."""
        conversion = ConversionService.get_conversion(db, conversion_id)
        confirmed_at = utcnow()

        with store_errors(db, "confirm conversion"):
            updated = db.query(Conversion).filter(
                Conversion.id == conversion_id,
                Conversion.status == ConversionStatus.PENDING
            ).update(
                {"status": ConversionStatus.CONFIRMED, "confirmed_at": confirmed_at, "updated_at": confirmed_at},
                synchronize_session=False
            )
            if updated != 1:
                db.rollback()
                db.refresh(conversion)
                raise InvalidStateTransitionError(
                    "Only pending conversions can be confirmed",
                    details={"conversion_id": conversion_id, "status": conversion.status.value}
                )

            AuditService.log_action(
                db=db,
                action="conversion_confirmed",
                entity_type="affiliate_conversion",
                entity_id=conversion_id,
                user_id=user_id
            )
            db.commit()
            db.refresh(conversion)

        logger.info("Confirmed conversion id=%s", conversion_id)
        return conversion

    @staticmethod
    def list_conversions(
        db: Session,
        affiliate_user_id: str,
        conversion_type: Optional[str] = None,
        status: Optional[Union[ConversionStatus, str]] = None,
        limit: int = settings.DEFAULT_PAGE_SIZE,
        offset: int = 0
    ):
        """List conversions for an affiliate, newest first"""
        if limit < 1 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")
        limit = min(limit, settings.MAX_PAGE_SIZE)

        query = db.query(Conversion).filter(Conversion.affiliate_user_id == affiliate_user_id)
        if conversion_type:
            query = query.filter(Conversion.conversion_type == coerce_conversion_type(conversion_type).value)
        if status:
            try:
                status = ConversionStatus(status)
            except ValueError:
                raise ValidationError("Invalid status", details={"status": status})
            query = query.filter(Conversion.status == status)

        with store_errors(db, "list conversions"):
            return query.order_by(Conversion.created_at.desc()).offset(offset).limit(limit).all()

    @staticmethod
    def get_affiliate_stats(db: Session, affiliate_user_id: str) -> AffiliateStats:
        """Dashboard numbers for an affiliate"""
        with store_errors(db, "affiliate stats"):
            conversions = db.query(Conversion).filter(
                Conversion.affiliate_user_id == affiliate_user_id
            ).order_by(Conversion.created_at.desc()).all()

        now = utcnow()
        total = len(conversions)
        earnings = sum((c.commission_amount for c in conversions), ZERO)
        this_month = sum(
            1 for c in conversions
            if c.created_at.year == now.year and c.created_at.month == now.month
        )
        settled = sum(1 for c in conversions if c.status in (ConversionStatus.CONFIRMED, ConversionStatus.PAID))
        conversion_rate = int((Decimal(settled) * 100 / total).quantize(Decimal("1"), rounding=ROUND_HALF_UP)) if total else 0

        history = [
            ReferralHistoryItem(
                id=c.id,
                status=HISTORY_STATUS_LABELS[c.status],
                conversion_type=c.conversion_type,
                conversion_value=c.conversion_value,
                commission_amount=c.commission_amount,
                source=c.referral_source or "direct",
                created_at=c.created_at
            )
            for c in conversions
        ]

        return AffiliateStats(
            total_referrals=total,
            total_earnings=earnings,
            current_month_referrals=this_month,
            conversion_rate=conversion_rate,
            referral_history=history
        )
