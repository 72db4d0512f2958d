from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session
from typing import List, Optional

from app.core.config import settings
from app.core.database import get_db
from app.core.security import CurrentUser, UserRole, get_current_user, require_role
from app.schemas.affiliate import (
    AffiliateStats,
    ConversionCreate,
    ConversionResponse,
    PendingCommission,
    RecordConversionResult,
    ReferralCodeResponse,
)
from app.services.conversion_service import ConversionService
from app.services.pending_commission_service import PendingCommissionService
from app.services.referral_codes import generate_referral_code

router = APIRouter()


@router.get("", response_model=AffiliateStats)
async def get_affiliate_dashboard(
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get affiliate dashboard stats for the caller"""
    return ConversionService.get_affiliate_stats(db, current_user.id)


@router.get("/conversions", response_model=List[ConversionResponse])
async def list_conversions(
    type: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = settings.DEFAULT_PAGE_SIZE,
    offset: int = 0,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List the caller's conversions"""
    return ConversionService.list_conversions(
        db=db,
        affiliate_user_id=current_user.id,
        conversion_type=type,
        status=status,
        limit=limit,
        offset=offset
    )


@router.post("/conversions", response_model=RecordConversionResult, status_code=status.HTTP_201_CREATED)
async def record_conversion(
    conversion: ConversionCreate,
    response: Response,
    current_user: CurrentUser = Depends(require_role(UserRole.ADMIN, UserRole.SERVICE)),
    db: Session = Depends(get_db)
):
    """Record a conversion (idempotent on the reference)"""
    recorded, was_existing = ConversionService.record_conversion(
        db, conversion, created_by=current_user.id
    )
    if was_existing:
        response.status_code = status.HTTP_200_OK
    return RecordConversionResult(
        conversion=ConversionResponse.model_validate(recorded),
        was_existing=was_existing
    )


@router.get("/pending-commission", response_model=PendingCommission)
async def get_pending_commission(
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Commission earned by the caller and not yet in a payout"""
    return PendingCommissionService.get_pending_commission(db, current_user.id)


@router.get("/referral-code", response_model=ReferralCodeResponse)
async def get_referral_code(current_user: CurrentUser = Depends(get_current_user)):
    return ReferralCodeResponse(
        user_id=current_user.id,
        referral_code=generate_referral_code(current_user.id)
    )
