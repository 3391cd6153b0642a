"""API route aggregation.

All routers registered here get mounted in main.py under /api.

Learn: Order and user routes check capabilities per route (see
require_permission); health, clients and auth are open.
"""

from fastapi import APIRouter

from orderstream.api.auth import router as auth_router
from orderstream.api.clients import router as clients_router
from orderstream.api.health import router as health_router
from orderstream.api.orders import router as orders_router
from orderstream.api.users import router as users_router

api_router = APIRouter(prefix="/api")

# Open routes — no auth required
api_router.include_router(health_router, tags=["health"])
api_router.include_router(clients_router, tags=["realtime"])
api_router.include_router(auth_router, tags=["auth"])

# Protected routes — capability checked per route
api_router.include_router(orders_router, tags=["orders"])
api_router.include_router(users_router, tags=["users"])
