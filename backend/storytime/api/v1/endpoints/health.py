from fastapi import APIRouter, Request

from storytime.schemas.health import HealthRead

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthRead)
async def health(request: Request) -> HealthRead:
    settings = request.app.state.settings
    scheduler = request.app.state.scheduler
    jobs = sorted(job.id for job in scheduler.get_jobs()) if scheduler is not None else []
    return HealthRead(
        status="ok",
        app=settings.app_name,
        environment=settings.environment,
        jobs=jobs,
    )
