"""FastAPI server - job submission, live status and guide access"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from config import Settings, configure_logging, get_settings
from core.broadcaster import StatusBroadcaster, StatusEvent
from core.database import DatabaseManager
from core.error_handling import ErrorCategory, PipelineError
from core.guide_storage import GuideStorage
from core.job_store import JobStore
from workers.orchestrator import PipelineOrchestrator, build_orchestrator

logger = logging.getLogger(__name__)

STATUS_BY_CATEGORY = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.AUTHORIZATION: 403,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.CONFLICT: 409,
    ErrorCategory.UPSTREAM: 502,
    ErrorCategory.TIMEOUT: 504,
    ErrorCategory.DATABASE: 503,
    ErrorCategory.UNKNOWN: 500,
}


# Pydantic models
class GuideOptions(BaseModel):
    style: Optional[str] = None               # default, concise, detailed
    target_audience: Optional[str] = None     # beginner, intermediate, advanced
    max_length: Optional[int] = Field(default=None, gt=0)
    include_timestamps: Optional[bool] = None


class SubmitJobRequest(BaseModel):
    url: str
    guide_config: Optional[GuideOptions] = None


OrchestratorFactory = Callable[[Settings, DatabaseManager, StatusBroadcaster], PipelineOrchestrator]


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Identity supplied by the authentication layer in front of this service."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Authentication required")
    return x_user_id.strip()


def get_orchestrator(request: Request) -> PipelineOrchestrator:
    return request.app.state.orchestrator


def get_job_store(request: Request) -> JobStore:
    return request.app.state.orchestrator.job_store


def get_guide_storage(request: Request) -> GuideStorage:
    return request.app.state.orchestrator.guide_storage


def create_app(
    settings: Optional[Settings] = None,
    db_manager: Optional[DatabaseManager] = None,
    broadcaster: Optional[StatusBroadcaster] = None,
    orchestrator_factory: Optional[OrchestratorFactory] = None,
) -> FastAPI:
    """
    Build the API application.

    The database, broadcaster and orchestrator are created on startup and
    attached to ``app.state``; tests pass their own factory to swap in fakes
    for the external tools.
    """
    settings = settings or get_settings()
    factory = orchestrator_factory or build_orchestrator

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        manager = db_manager or DatabaseManager(settings.database_url)
        await manager.initialize()
        status_broadcaster = broadcaster or StatusBroadcaster()

        app.state.settings = settings
        app.state.db_manager = manager
        app.state.broadcaster = status_broadcaster
        app.state.orchestrator = factory(settings, manager, status_broadcaster)
        logger.info("API started")
        try:
            yield
        finally:
            await manager.close()
            logger.info("API stopped")

    app = FastAPI(
        title="HowTube API",
        description="Turn video URLs into structured written guides",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        status_code = STATUS_BY_CATEGORY.get(exc.category, 500)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        body = exc.to_dict()
        body.pop('cause', None)
        return JSONResponse(status_code=status_code, content=body)

    # Health check
    @app.get("/")
    async def root():
        return {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "endpoints": [
                "/docs",
                "/jobs",
                "/jobs/{job_id}",
                "/jobs/{job_id}/events",
                "/guides",
                "/guides/{guide_id}",
            ]
        }

    # Job endpoints
    @app.post("/jobs", status_code=202)
    async def submit_job(
        body: SubmitJobRequest,
        background_tasks: BackgroundTasks,
        user_id: str = Depends(get_user_id),
        orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
    ) -> Dict[str, Any]:
        """Validate the URL, create a pending job and start processing it"""
        options = body.guide_config.model_dump(exclude_none=True) if body.guide_config else None
        submission = await orchestrator.submit(body.url, user_id, options)
        background_tasks.add_task(orchestrator.process_job, submission['job_id'])
        return submission

    @app.get("/jobs")
    async def list_jobs(
        video_id: Optional[str] = None,
        user_id: str = Depends(get_user_id),
        store: JobStore = Depends(get_job_store),
    ):
        jobs = await store.list_for_user(user_id, video_id=video_id)
        return {"jobs": [job.to_dict() for job in jobs], "total": len(jobs)}

    @app.get("/jobs/{job_id}")
    async def get_job(
        job_id: str,
        user_id: str = Depends(get_user_id),
        store: JobStore = Depends(get_job_store),
    ):
        job = await store.get_owned(job_id, user_id)
        return job.to_dict(include_transcript=True)

    @app.delete("/jobs/{job_id}")
    async def delete_job(
        job_id: str,
        user_id: str = Depends(get_user_id),
        store: JobStore = Depends(get_job_store),
    ):
        await store.delete(job_id, user_id)
        return {"deleted": True, "job_id": job_id}

    @app.get("/jobs/{job_id}/events")
    async def job_events(
        job_id: str,
        request: Request,
        user_id: str = Depends(get_user_id),
        store: JobStore = Depends(get_job_store),
    ):
        """Server-Sent Events: current state first, then live updates until terminal"""
        status_broadcaster: StatusBroadcaster = request.app.state.broadcaster
        keepalive = request.app.state.settings.sse_keepalive_seconds

        # Subscribe before reading the snapshot so no transition falls in between
        channel = status_broadcaster.subscribe(job_id)
        try:
            job = await store.get_owned(job_id, user_id)
        except Exception:
            status_broadcaster.unsubscribe(job_id, channel)
            raise
        snapshot = StatusEvent.from_job(job, include_transcript=True)

        async def event_stream():
            try:
                yield snapshot.to_sse()
                if snapshot.is_terminal:
                    return

                last_revision = snapshot.revision
                while True:
                    if await request.is_disconnected():
                        break
                    event = await channel.get(timeout=keepalive)
                    if event is None:
                        yield ": keep-alive\n\n"
                        continue
                    if event.revision <= last_revision:
                        continue
                    last_revision = event.revision
                    yield event.to_sse()
                    if event.is_terminal:
                        break
            finally:
                status_broadcaster.unsubscribe(job_id, channel)

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    # Guide endpoints
    @app.get("/guides")
    async def list_guides(
        video_id: Optional[str] = None,
        user_id: str = Depends(get_user_id),
        guides: GuideStorage = Depends(get_guide_storage),
    ):
        items = await guides.list_guides(user_id, video_id=video_id)
        return {"guides": [g.to_dict() for g in items], "total": len(items)}

    @app.get("/guides/{guide_id}")
    async def get_guide(
        guide_id: str,
        user_id: str = Depends(get_user_id),
        guides: GuideStorage = Depends(get_guide_storage),
    ):
        guide = await guides.get_guide(guide_id, user_id)
        return guide.to_dict(include_sections=True)

    @app.delete("/guides/{guide_id}")
    async def delete_guide(
        guide_id: str,
        user_id: str = Depends(get_user_id),
        guides: GuideStorage = Depends(get_guide_storage),
    ):
        await guides.delete_guide(guide_id, user_id)
        return {"deleted": True, "guide_id": guide_id}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    configure_logging()
    uvicorn.run(app, host=get_settings().api_host, port=get_settings().api_port)
