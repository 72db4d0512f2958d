from fastapi import APIRouter

from app.api.v1.endpoints import affiliate, admin_affiliate

api_router = APIRouter()

api_router.include_router(affiliate.router, prefix="/affiliate", tags=["Affiliate"])
api_router.include_router(admin_affiliate.router, prefix="/admin/affiliate", tags=["Affiliate Admin"])
