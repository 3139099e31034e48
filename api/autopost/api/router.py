from fastapi import APIRouter

from autopost.api.routes import admin, connections, cron, health, posts, schedules

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(cron.router, prefix="/cron", tags=["trigger"])
api_router.include_router(schedules.router, prefix="/schedules", tags=["schedules"])
api_router.include_router(posts.router, prefix="/posts", tags=["posts"])
api_router.include_router(connections.router, prefix="/connections", tags=["connections"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
