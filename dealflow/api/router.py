from fastapi import APIRouter

from dealflow.api.routes import admin, health, rules

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(rules.router, prefix="/rules", tags=["rules"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
