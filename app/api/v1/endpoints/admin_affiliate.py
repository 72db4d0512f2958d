from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List, Optional

from app.core.config import settings
from app.core.database import get_db
from app.core.security import CurrentUser, UserRole, require_role
from app.schemas.affiliate import (
    CommissionRateCreate,
    CommissionRateResponse,
    CommissionRateUpdate,
    ConversionResponse,
    PayoutCreate,
    PayoutResponse,
    PayoutTransition,
    PendingCommission,
    ResolvedRate,
)
from app.services.commission_rate_service import (
    CommissionRateService,
    coerce_conversion_type,
    get_rate_resolver,
)
from app.services.conversion_service import ConversionService
from app.services.payout_service import PayoutService
from app.services.pending_commission_service import PendingCommissionService

router = APIRouter()

admin_only = require_role(UserRole.ADMIN)


@router.get("/commission-rates", response_model=List[CommissionRateResponse])
async def list_commission_rates(
    current_user: CurrentUser = Depends(admin_only),
    db: Session = Depends(get_db)
):
    return CommissionRateService.list_rates(db)


@router.post("/commission-rates", response_model=CommissionRateResponse, status_code=status.HTTP_201_CREATED)
async def create_commission_rate(
    rate: CommissionRateCreate,
    current_user: CurrentUser = Depends(admin_only),
    db: Session = Depends(get_db)
):
    """Create a commission rate (admin only)"""
    return CommissionRateService.create_rate(db, rate, user_id=current_user.id)


@router.patch("/commission-rates", response_model=CommissionRateResponse)
async def update_commission_rate(
    rate: CommissionRateUpdate,
    current_user: CurrentUser = Depends(admin_only),
    db: Session = Depends(get_db)
):
    """Update a commission rate by id or conversion type (admin only)"""
    return CommissionRateService.update_rate(db, rate, user_id=current_user.id)


@router.get("/commission-rates/{conversion_type}/resolve", response_model=ResolvedRate)
async def resolve_commission_rate(
    conversion_type: str,
    current_user: CurrentUser = Depends(admin_only),
    db: Session = Depends(get_db)
):
    """Rate that would be applied to a new conversion right now"""
    conversion_type = coerce_conversion_type(conversion_type)
    return ResolvedRate(
        conversion_type=conversion_type,
        rate_percent=get_rate_resolver().get_rate(db, conversion_type)
    )


@router.post("/conversions/{conversion_id}/confirm", response_model=ConversionResponse)
async def confirm_conversion(
    conversion_id: str,
    current_user: CurrentUser = Depends(require_role(UserRole.ADMIN, UserRole.SERVICE)),
    db: Session = Depends(get_db)
):
    return ConversionService.confirm_conversion(db, conversion_id, user_id=current_user.id)


@router.get("/pending-commission/{affiliate_user_id}", response_model=PendingCommission)
async def get_affiliate_pending_commission(
    affiliate_user_id: str,
    current_user: CurrentUser = Depends(admin_only),
    db: Session = Depends(get_db)
):
    return PendingCommissionService.get_pending_commission(db, affiliate_user_id)


@router.get("/payouts", response_model=List[PayoutResponse])
async def list_payouts(
    status: Optional[str] = None,
    affiliate_user_id: Optional[str] = None,
    skip: int = 0,
    limit: int = settings.DEFAULT_PAGE_SIZE,
    current_user: CurrentUser = Depends(admin_only),
    db: Session = Depends(get_db)
):
    """List payouts (admin only)"""
    return PayoutService.list_payouts(
        db=db,
        status=status,
        affiliate_user_id=affiliate_user_id,
        skip=skip,
        limit=limit
    )


@router.post("/payouts", response_model=PayoutResponse, status_code=status.HTTP_201_CREATED)
async def create_payout(
    payout: PayoutCreate,
    current_user: CurrentUser = Depends(admin_only),
    db: Session = Depends(get_db)
):
    """Create a payout from the affiliate's unpaid confirmed conversions"""
    return PayoutService.create_payout(db, payout, requested_by=current_user.id)


@router.get("/payouts/{payout_id}", response_model=PayoutResponse)
async def get_payout(
    payout_id: str,
    current_user: CurrentUser = Depends(admin_only),
    db: Session = Depends(get_db)
):
    return PayoutService.get_payout(db, payout_id)


@router.patch("/payouts/{payout_id}", response_model=PayoutResponse)
async def transition_payout(
    payout_id: str,
    transition: PayoutTransition,
    current_user: CurrentUser = Depends(admin_only),
    db: Session = Depends(get_db)
):
    """Approve, reject, complete or fail a payout (admin only)"""
    return PayoutService.transition_payout(db, payout_id, transition, user_id=current_user.id)
