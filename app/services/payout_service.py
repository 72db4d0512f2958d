import logging
from decimal import Decimal
from typing import Dict, Optional, Tuple, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.config import settings
from app.core.database import store_errors
from app.core.exceptions import (
    ConflictError,
    InvalidStateTransitionError,
    NotFoundError,
    PayoutCompletionError,
    ValidationError,
)
from app.core.money import ZERO
from app.models.conversion import Conversion, ConversionStatus
from app.models.payout import Payout, PayoutStatus
from app.schemas.affiliate import PayoutAction, PayoutCreate, PayoutTransition
from app.schemas.base import parse_request
from app.services.audit_service import AuditService
from app.services.pending_commission_service import PendingCommissionService

logger = logging.getLogger(__name__)

# action -> (allowed source statuses, target status)
PAYOUT_TRANSITIONS: Dict[PayoutAction, Tuple[Tuple[PayoutStatus, ...], PayoutStatus]] = {
    PayoutAction.APPROVE: ((PayoutStatus.PENDING,), PayoutStatus.PROCESSING),
    PayoutAction.REJECT: ((PayoutStatus.PENDING, PayoutStatus.PROCESSING), PayoutStatus.CANCELLED),
    PayoutAction.COMPLETE: ((PayoutStatus.PROCESSING,), PayoutStatus.COMPLETED),
    PayoutAction.FAIL: ((PayoutStatus.PROCESSING,), PayoutStatus.FAILED),
}

TRANSITION_ERRORS = {
    PayoutAction.APPROVE: "Only pending payouts can be approved",
    PayoutAction.REJECT: "Only pending or processing payouts can be rejected",
    PayoutAction.COMPLETE: "Only processing payouts can be completed",
    PayoutAction.FAIL: "Only processing payouts can be marked as failed",
}


class PayoutService:
    @staticmethod
    def get_payout(db: Session, payout_id: str) -> Payout:
        with store_errors(db, "get payout"):
            payout = db.query(Payout).filter(Payout.id == payout_id).first()
        if not payout:
            raise NotFoundError("Payout not found", details={"payout_id": payout_id})
        return payout

    @staticmethod
    def list_payouts(
        db: Session,
        status: Optional[Union[PayoutStatus, str]] = None,
        affiliate_user_id: Optional[str] = None,
        skip: int = 0,
        limit: int = settings.DEFAULT_PAGE_SIZE
    ):
        """List payouts, newest first"""
        query = db.query(Payout)

        if status:
            try:
                status = PayoutStatus(status)
            except ValueError:
                raise ValidationError("Invalid status", details={"status": status})
            query = query.filter(Payout.status == status)
        if affiliate_user_id:
            query = query.filter(Payout.affiliate_user_id == affiliate_user_id)

        limit = min(max(limit, 1), settings.MAX_PAGE_SIZE)
        with store_errors(db, "list payouts"):
            return query.order_by(Payout.created_at.desc()).offset(max(skip, 0)).limit(limit).all()

    @staticmethod
    def create_payout(
        db: Session,
        request: Union[PayoutCreate, dict],
        requested_by: Optional[str] = None,
        fee_percent: Optional[Decimal] = None
    ) -> Payout:
        """Create a pending payout covering every unpaid confirmed conversion.

        Amounts are fixed here and never recomputed.
        """
        request = parse_request(PayoutCreate, request)

        unpaid = PendingCommissionService.unpaid_conversions(db, request.affiliate_user_id, lock=True)
        pending = PendingCommissionService.summarize(unpaid, fee_percent)
        if pending.total_commission <= ZERO:
            db.rollback()
            raise ConflictError(
                "No unpaid commission available for payout",
                details={"affiliate_user_id": request.affiliate_user_id}
            )

        payout = Payout(
            affiliate_user_id=request.affiliate_user_id,
            amount=pending.total_commission,
            platform_fee=pending.platform_fee,
            net_amount=pending.net_amount,
            currency=pending.currency,
            status=PayoutStatus.PENDING,
            related_conversion_ids=[c.id for c in unpaid],
            notes=request.notes,
            requested_by=requested_by
        )

        with store_errors(db, "create payout"):
            db.add(payout)
            db.flush()
            AuditService.log_action(
                db=db,
                action="payout_created",
                entity_type="affiliate_payout",
                entity_id=payout.id,
                user_id=requested_by,
                changes={
                    "amount": str(payout.amount),
                    "conversion_count": len(unpaid)
                }
            )
            db.commit()

        logger.info(
            "Created payout id=%s affiliate=%s amount=%s conversions=%d",
            payout.id, payout.affiliate_user_id, payout.amount, len(unpaid)
        )
        return payout

    @staticmethod
    def transition_payout(
        db: Session,
        payout_id: str,
        request: Union[PayoutTransition, dict],
        user_id: Optional[str] = None
    ) -> Payout:
        """Apply approve, reject, complete or fail to a payout.

        The status write is conditioned on the status that was read, so
        of two concurrent transitions at most one succeeds. Callers that
        time out must re-read the payout before trying again.
        """
        request = parse_request(PayoutTransition, request)
        payout = PayoutService.get_payout(db, payout_id)

        sources, target = PAYOUT_TRANSITIONS[request.action]
        current = payout.status
        if current not in sources:
            raise InvalidStateTransitionError(
                TRANSITION_ERRORS[request.action],
                details={"payout_id": payout_id, "status": current.value, "action": request.action.value}
            )

        now = utcnow()
        values = {"status": target, "updated_at": now}
        if request.notes:
            values["notes"] = request.notes

        if request.action == PayoutAction.APPROVE:
            values["processed_at"] = now
        elif request.action == PayoutAction.REJECT:
            values["rejection_reason"] = request.rejection_reason
        elif request.action == PayoutAction.FAIL:
            if request.rejection_reason:
                values["rejection_reason"] = request.rejection_reason
        elif request.action == PayoutAction.COMPLETE:
            values["completed_at"] = now
            if request.transaction_id:
                values["transaction_id"] = request.transaction_id
            if request.payment_reference:
                values["payment_reference"] = request.payment_reference

        if request.action == PayoutAction.COMPLETE:
            PayoutService._complete(db, payout, values, now, user_id)
        else:
            with store_errors(db, f"{request.action.value} payout"):
                PayoutService._compare_and_set(db, payout, current, values)
                PayoutService._audit_transition(db, payout, request.action, current, target, user_id, values)
                db.commit()

        db.refresh(payout)
        logger.info(
            "Payout id=%s %s: %s -> %s", payout.id, request.action.value, current.value, payout.status.value
        )
        return payout

    @staticmethod
    def _compare_and_set(db: Session, payout: Payout, expected: PayoutStatus, values: dict) -> None:
        updated = db.query(Payout).filter(
            Payout.id == payout.id,
            Payout.status == expected
        ).update(values, synchronize_session=False)
        if updated != 1:
            db.rollback()
            db.refresh(payout)
            raise InvalidStateTransitionError(
                "Payout status changed concurrently",
                details={"payout_id": payout.id, "expected": expected.value, "status": payout.status.value}
            )

    @staticmethod
    def _complete(db: Session, payout: Payout, values: dict, now, user_id: Optional[str]) -> None:
        """Complete the payout and mark its conversions paid in one transaction.

        If any covered conversion cannot be moved from confirmed to paid,
        nothing is written and the payout stays processing.
        """
        conversion_ids = list(payout.related_conversion_ids or [])

        with store_errors(db, "complete payout"):
            PayoutService._compare_and_set(db, payout, PayoutStatus.PROCESSING, values)
            try:
                marked = 0
                if conversion_ids:
                    marked = db.query(Conversion).filter(
                        Conversion.id.in_(conversion_ids),
                        Conversion.affiliate_user_id == payout.affiliate_user_id,
                        Conversion.status == ConversionStatus.CONFIRMED
                    ).update(
                        {"status": ConversionStatus.PAID, "paid_at": now, "updated_at": now},
                        synchronize_session=False
                    )
                if marked != len(conversion_ids):
                    db.rollback()
                    logger.error(
                        "Payout id=%s completion rolled back: %d of %d conversions could be marked paid",
                        payout.id, marked, len(conversion_ids)
                    )
                    raise PayoutCompletionError(
                        "Not every conversion in the payout could be marked paid; payout left processing",
                        details={"payout_id": payout.id, "marked": marked, "expected": len(conversion_ids)}
                    )

                PayoutService._audit_transition(
                    db, payout, PayoutAction.COMPLETE, PayoutStatus.PROCESSING, PayoutStatus.COMPLETED, user_id, values
                )
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                logger.error("Payout id=%s completion rolled back: %s", payout.id, exc)
                raise PayoutCompletionError(
                    "Payout completion failed; payout left processing",
                    details={"payout_id": payout.id}
                ) from exc

    @staticmethod
    def _audit_transition(
        db: Session,
        payout: Payout,
        action: PayoutAction,
        source: PayoutStatus,
        target: PayoutStatus,
        user_id: Optional[str],
        values: dict
    ) -> None:
        changes = {"from": source.value, "to": target.value}
        for key in ("rejection_reason", "transaction_id", "payment_reference", "notes"):
            if values.get(key):
                changes[key] = values[key]
        AuditService.log_action(
            db=db,
            action=f"payout_{action.value}",
            entity_type="affiliate_payout",
            entity_id=payout.id,
            user_id=user_id,
            changes=changes
        )
