from fastapi import APIRouter

from usersync.api.routes import health, jobs, webhooks

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["processor"])
