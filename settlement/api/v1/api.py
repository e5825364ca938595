from fastapi import APIRouter
from settlement.api.v1.routes.cron import router as cron_router
from settlement.api.v1.routes.payouts import router as payouts_router
from settlement.api.v1.routes.transfers import router as transfers_router

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(cron_router)
api_router.include_router(payouts_router)
api_router.include_router(transfers_router)
