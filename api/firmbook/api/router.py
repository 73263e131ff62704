from fastapi import APIRouter

from firmbook.api.routes import health, jobs, maintenance, record_ai, records, research, snippets

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(records.router, prefix="/records", tags=["records"])
api_router.include_router(record_ai.router, prefix="/records", tags=["records"])
api_router.include_router(research.router, prefix="/research", tags=["records"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
api_router.include_router(maintenance.router, prefix="/maintenance", tags=["maintenance"])
api_router.include_router(snippets.router, prefix="/snippets", tags=["snippets"])
