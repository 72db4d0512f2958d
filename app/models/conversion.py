from sqlalchemy import (
    Column, String, DateTime, Numeric, JSON, Index, UniqueConstraint, CheckConstraint, Enum as SQLEnum
)
from app.core.clock import utcnow
import uuid
import enum

from app.core.database import Base


class ConversionStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PAID = "paid"


class Conversion(Base):
    __tablename__ = "affiliate_conversions"
    __table_args__ = (
        # Idempotency key. Rows without a reference are never deduplicated.
        UniqueConstraint(
            "affiliate_user_id", "referred_user_id", "conversion_type", "reference_id", "reference_type",
            name="uq_affiliate_conversion_idempotency"
        ),
        CheckConstraint("conversion_value >= 0", name="ck_conversion_value_non_negative"),
        CheckConstraint("commission_amount >= 0", name="ck_commission_amount_non_negative"),
        Index("ix_affiliate_conversions_affiliate_status", "affiliate_user_id", "status"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    affiliate_user_id = Column(String, nullable=False, index=True)
    referred_user_id = Column(String, nullable=False, index=True)

    conversion_type = Column(String(50), nullable=False)
    conversion_value = Column(Numeric(12, 2), nullable=False)

    # Snapshot of the rate at creation time
    commission_rate_percent = Column(Numeric(5, 2), nullable=False)
    commission_amount = Column(Numeric(12, 2), nullable=False)

    status = Column(SQLEnum(ConversionStatus), nullable=False, default=ConversionStatus.PENDING)

    reference_id = Column(String, nullable=True)
    reference_type = Column(String(50), nullable=True)

    affiliate_code = Column(String(20), nullable=True, index=True)
    referral_source = Column(String(50), nullable=True, default="direct")
    metadata_ = Column("metadata", JSON, nullable=True)

    confirmed_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
