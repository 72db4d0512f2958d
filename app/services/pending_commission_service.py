import logging
from decimal import Decimal
from typing import List, Optional, Set

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import store_errors
from app.core.money import ZERO, percent_of, round_money
from app.models.conversion import Conversion, ConversionStatus
from app.models.payout import ACTIVE_PAYOUT_STATUSES, Payout
from app.schemas.affiliate import PendingCommission

logger = logging.getLogger(__name__)


class PendingCommissionService:
    """Commission an affiliate has earned but not yet put into a payout.

    Always computed from current rows. Payout creation depends on it, so
    a cached figure could hand the same conversion to two payouts.
    """

    @staticmethod
    def reserved_conversion_ids(db: Session, affiliate_user_id: str) -> Set[str]:
        """Conversion ids held by pending, processing or completed payouts."""
        rows = db.query(Payout.related_conversion_ids).filter(
            Payout.affiliate_user_id == affiliate_user_id,
            Payout.status.in_(ACTIVE_PAYOUT_STATUSES)
        ).all()
        reserved = set()
        for (conversion_ids,) in rows:
            reserved.update(conversion_ids or [])
        return reserved

    @staticmethod
    def unpaid_conversions(db: Session, affiliate_user_id: str, lock: bool = False) -> List[Conversion]:
        """Confirmed conversions not covered by any active payout, oldest first.

        With `lock`, the confirmed rows are locked before payouts are read,
        so two concurrent payout requests for one affiliate serialize.
        """
        with store_errors(db, "load unpaid conversions"):
            query = db.query(Conversion).filter(
                Conversion.affiliate_user_id == affiliate_user_id,
                Conversion.status == ConversionStatus.CONFIRMED
            ).order_by(Conversion.created_at.asc(), Conversion.id.asc())
            if lock:
                query = query.with_for_update()
            confirmed = query.all()
            reserved = PendingCommissionService.reserved_conversion_ids(db, affiliate_user_id)
        return [c for c in confirmed if c.id not in reserved]

    @staticmethod
    def summarize(conversions: List[Conversion], fee_percent: Optional[Decimal] = None) -> PendingCommission:
        fee_percent = settings.AFFILIATE_PLATFORM_FEE_PERCENT if fee_percent is None else fee_percent
        total = round_money(sum((c.commission_amount for c in conversions), ZERO))
        platform_fee = percent_of(total, fee_percent)
        return PendingCommission(
            total_commission=total,
            platform_fee=platform_fee,
            net_amount=total - platform_fee,
            currency=settings.AFFILIATE_CURRENCY
        )

    @staticmethod
    def get_pending_commission(
        db: Session,
        affiliate_user_id: str,
        fee_percent: Optional[Decimal] = None
    ) -> PendingCommission:
        unpaid = PendingCommissionService.unpaid_conversions(db, affiliate_user_id)
        pending = PendingCommissionService.summarize(unpaid, fee_percent)
        logger.debug(
            "Pending commission affiliate=%s conversions=%d total=%s",
            affiliate_user_id, len(unpaid), pending.total_commission
        )
        return pending
