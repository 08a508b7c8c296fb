"""Корневой роутер API."""

from fastapi import APIRouter

from bridge.api.routes import automation, health, records

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(automation.router)
api_router.include_router(records.router)
