"""API routers for the portfolio ledger."""

from fastapi import APIRouter

from .holdings import router as holdings_router
from .snapshots import router as snapshots_router
from .tax import router as tax_router

router = APIRouter()
router.include_router(holdings_router, tags=["holdings"])
router.include_router(snapshots_router, tags=["snapshots"])
router.include_router(tax_router, tags=["tax"])

__all__ = ["router"]
