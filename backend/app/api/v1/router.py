from fastapi import APIRouter

from backend.app.api.v1.endpoints.health import router as health_router
from backend.app.api.v1.endpoints.prfs import router as prfs_router
from backend.app.api.v1.endpoints.purchase_orders import router as purchase_orders_router
from backend.app.api.v1.endpoints.deliveries import router as deliveries_router
from backend.app.api.v1.endpoints.ncrs import router as ncrs_router

router = APIRouter()
router.include_router(health_router, tags=["health"])
router.include_router(prfs_router, tags=["prfs"])
router.include_router(purchase_orders_router, tags=["purchase_orders"])
router.include_router(deliveries_router, tags=["deliveries"])
router.include_router(ncrs_router, tags=["ncrs"])
