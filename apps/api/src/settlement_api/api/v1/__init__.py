from fastapi import APIRouter

from .endpoints import (
    admin_payments,
    health,
    observability,
    payments,
)

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(payments.router)
router.include_router(admin_payments.router)
router.include_router(observability.router)
