from fastapi import APIRouter

from ledger_api.api.routes import health, reports, violations

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(reports.router, prefix="/reports", tags=["reports"])
api_router.include_router(violations.router, prefix="/violations", tags=["violations"])
