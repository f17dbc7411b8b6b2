# supportchat/api/v1/router.py
"""Main API router combining all v1 endpoints"""
from fastapi import APIRouter

from supportchat.api.v1 import rooms, queue, attendants, business_hours

api_router = APIRouter()

# Include all routers
api_router.include_router(rooms.router, prefix="/rooms", tags=["Rooms"])
api_router.include_router(queue.router, prefix="/queue", tags=["Queue"])
api_router.include_router(attendants.router, prefix="/attendants", tags=["Attendants"])
api_router.include_router(business_hours.router, prefix="/business-hours", tags=["Business Hours"])
