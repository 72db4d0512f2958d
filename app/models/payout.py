from sqlalchemy import Column, String, DateTime, Numeric, Text, JSON, Index, Enum as SQLEnum
from app.core.clock import utcnow
import uuid
import enum

from app.core.database import Base


class PayoutStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


# Payouts in these states hold their conversions out of the unpaid pool
ACTIVE_PAYOUT_STATUSES = (PayoutStatus.PENDING, PayoutStatus.PROCESSING, PayoutStatus.COMPLETED)
TERMINAL_PAYOUT_STATUSES = (PayoutStatus.COMPLETED, PayoutStatus.CANCELLED, PayoutStatus.FAILED)


class Payout(Base):
    __tablename__ = "affiliate_payouts"
    __table_args__ = (
        Index("ix_affiliate_payouts_affiliate_status", "affiliate_user_id", "status"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    affiliate_user_id = Column(String, nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    platform_fee = Column(Numeric(12, 2), nullable=False)
    net_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)

    status = Column(SQLEnum(PayoutStatus), nullable=False, default=PayoutStatus.PENDING)

    # Fixed at creation, never mutated
    related_conversion_ids = Column(JSON, nullable=False, default=list)

    transaction_id = Column(String(255), nullable=True)
    payment_reference = Column(String(255), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    requested_by = Column(String, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
