from fastapi import APIRouter

from kcs.api.v1.endpoints import files, orders, partner_orders

api_router = APIRouter()

api_router.include_router(partner_orders.router, prefix="/partner", tags=["intake"])
api_router.include_router(orders.router, prefix="/orders", tags=["orders"])
api_router.include_router(files.router, prefix="/files", tags=["files"])
