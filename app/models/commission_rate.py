from sqlalchemy import Column, String, Boolean, DateTime, Numeric, Text, CheckConstraint
from app.core.clock import utcnow
import uuid
import enum

from app.core.database import Base


class ConversionType(str, enum.Enum):
    SIGNUP = "signup"
    BOOKING = "booking"
    PRODUCT_PURCHASE = "product_purchase"
    EVENT_TICKET_PURCHASE = "event_ticket_purchase"
    SUBSCRIPTION = "subscription"
    REFERRAL = "referral"


class CommissionRate(Base):
    __tablename__ = "affiliate_commission_rates"
    __table_args__ = (
        CheckConstraint("rate_percent >= 0 AND rate_percent <= 100", name="ck_commission_rate_bounds"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    conversion_type = Column(String(50), unique=True, nullable=False, index=True)

    rate_percent = Column(Numeric(5, 2), nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
