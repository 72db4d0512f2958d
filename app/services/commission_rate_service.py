import logging
from decimal import Decimal
from functools import lru_cache
from typing import Dict, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.cache import CacheBackend, InMemoryCache
from app.core.config import settings
from app.core.database import store_errors
from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.core.money import HUNDRED, ZERO, to_decimal
from app.models.commission_rate import CommissionRate, ConversionType
from app.schemas.affiliate import CommissionRateCreate, CommissionRateUpdate
from app.schemas.base import parse_request
from app.services.audit_service import AuditService

logger = logging.getLogger(__name__)

DEFAULT_RATE = ZERO


def coerce_conversion_type(conversion_type: Union[ConversionType, str]) -> ConversionType:
    try:
        return ConversionType(conversion_type)
    except ValueError:
        raise ValidationError(
            f"Invalid conversion_type. Must be one of: {', '.join(t.value for t in ConversionType)}",
            details={"conversion_type": conversion_type}
        )


class CommissionRateResolver:
    """Resolves the active commission percentage for a conversion type.

    Active rates are loaded from the store in one query and kept in a
    TTL cache owned by this instance. Writers call `invalidate()` before
    answering so the next read in this process sees the new rate; other
    processes converge once their TTL runs out.
    """

    CACHE_KEY = "commission_rates:active"

    def __init__(self, cache: Optional[CacheBackend] = None, ttl_seconds: Optional[float] = None):
        self.ttl_seconds = settings.COMMISSION_RATE_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self.cache = cache if cache is not None else InMemoryCache(default_ttl=self.ttl_seconds)

    def _load_active_rates(self, db: Session) -> Dict[str, Decimal]:
        with store_errors(db, "load commission rates"):
            rows = db.query(CommissionRate.conversion_type, CommissionRate.rate_percent).filter(
                CommissionRate.is_active == True  # noqa: E712
            ).all()
        rates = {conversion_type: to_decimal(rate) for conversion_type, rate in rows}
        logger.debug("Loaded %d active commission rates", len(rates))
        return rates

    def active_rates(self, db: Session) -> Dict[str, Decimal]:
        rates = self.cache.get(self.CACHE_KEY)
        if rates is None:
            rates = self._load_active_rates(db)
            self.cache.set(self.CACHE_KEY, rates, ttl=self.ttl_seconds)
        return rates

    def get_rate(self, db: Session, conversion_type: Union[ConversionType, str]) -> Decimal:
        conversion_type = coerce_conversion_type(conversion_type)
        rate = self.active_rates(db).get(conversion_type.value)
        if rate is None:
            logger.warning(
                "No active commission rate for %s, using default %s%%", conversion_type.value, DEFAULT_RATE
            )
            return DEFAULT_RATE
        if rate < ZERO or rate > HUNDRED:
            logger.error("Stored commission rate %s for %s is out of bounds", rate, conversion_type.value)
            return min(max(rate, ZERO), HUNDRED)
        return rate

    def invalidate(self) -> None:
        self.cache.invalidate(self.CACHE_KEY)
        logger.info("Commission rate cache invalidated")


@lru_cache()
def get_rate_resolver() -> CommissionRateResolver:
    return CommissionRateResolver()


class CommissionRateService:
    @staticmethod
    def list_rates(db: Session):
        with store_errors(db, "list commission rates"):
            return db.query(CommissionRate).order_by(CommissionRate.conversion_type.asc()).all()

    @staticmethod
    def create_rate(
        db: Session,
        request: Union[CommissionRateCreate, dict],
        user_id: Optional[str] = None,
        resolver: Optional[CommissionRateResolver] = None
    ) -> CommissionRate:
        request = parse_request(CommissionRateCreate, request)
        resolver = resolver or get_rate_resolver()

        existing = db.query(CommissionRate).filter(
            CommissionRate.conversion_type == request.conversion_type.value
        ).first()
        if existing:
            raise ConflictError(
                f"Commission rate for {request.conversion_type.value} already exists",
                details={"id": existing.id}
            )

        rate = CommissionRate(
            conversion_type=request.conversion_type.value,
            rate_percent=request.rate_percent,
            description=request.description,
            is_active=request.is_active
        )
        with store_errors(db, "create commission rate"):
            try:
                db.add(rate)
                db.flush()
                AuditService.log_action(
                    db=db,
                    action="commission_rate_created",
                    entity_type="commission_rate",
                    entity_id=rate.id,
                    user_id=user_id,
                    changes={"conversion_type": rate.conversion_type, "rate_percent": str(rate.rate_percent)}
                )
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise ConflictError(
                    f"Commission rate for {request.conversion_type.value} already exists"
                ) from exc

        resolver.invalidate()
        logger.info("Created commission rate %s=%s%%", rate.conversion_type, rate.rate_percent)
        return rate

    @staticmethod
    def update_rate(
        db: Session,
        request: Union[CommissionRateUpdate, dict],
        user_id: Optional[str] = None,
        resolver: Optional[CommissionRateResolver] = None
    ) -> CommissionRate:
        request = parse_request(CommissionRateUpdate, request)
        resolver = resolver or get_rate_resolver()

        query = db.query(CommissionRate)
        if request.id:
            query = query.filter(CommissionRate.id == request.id)
        else:
            query = query.filter(CommissionRate.conversion_type == request.conversion_type.value)
        rate = query.first()
        if not rate:
            raise NotFoundError("Commission rate not found")

        changes = {}
        if request.rate_percent is not None:
            changes["rate_percent"] = {"old": str(rate.rate_percent), "new": str(request.rate_percent)}
            rate.rate_percent = request.rate_percent
        if request.description is not None:
            changes["description"] = request.description
            rate.description = request.description
        if request.is_active is not None:
            changes["is_active"] = request.is_active
            rate.is_active = request.is_active

        AuditService.log_action(
            db=db,
            action="commission_rate_updated",
            entity_type="commission_rate",
            entity_id=rate.id,
            user_id=user_id,
            changes=changes
        )
        with store_errors(db, "update commission rate"):
            db.commit()

        resolver.invalidate()
        logger.info("Updated commission rate %s: %s", rate.conversion_type, changes)
        return rate

    @staticmethod
    def seed_default_rates(db: Session, resolver: Optional[CommissionRateResolver] = None) -> int:
        """Insert configured default rates for types that have no row yet."""
        resolver = resolver or get_rate_resolver()
        with store_errors(db, "load commission rates"):
            existing = {row.conversion_type for row in db.query(CommissionRate.conversion_type).all()}

        created = 0
        for conversion_type, rate_percent in settings.AFFILIATE_DEFAULT_RATES.items():
            conversion_type = coerce_conversion_type(conversion_type)
            if conversion_type.value in existing:
                continue
            request = parse_request(
                CommissionRateCreate,
                {"conversion_type": conversion_type, "rate_percent": rate_percent}
            )
            db.add(CommissionRate(
                conversion_type=request.conversion_type.value,
                rate_percent=request.rate_percent,
                description="Default rate",
                is_active=True
            ))
            created += 1

        if created:
            with store_errors(db, "seed commission rates"):
                db.commit()
            resolver.invalidate()
            logger.info("Seeded %d default commission rates", created)
        return created
