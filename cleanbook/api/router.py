"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from cleanbook.api.subscriptions import router as subscriptions_router
from cleanbook.api.bookings import router as bookings_router
from cleanbook.api.payments import router as payments_router
from cleanbook.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(subscriptions_router)
api_router.include_router(bookings_router)
api_router.include_router(payments_router)
api_router.include_router(health_router)
