"""HTTP endpoints over a shared GenerationSession.

Endpoints:
- POST   /api/generations   queue requests, returns 202 with their ids
- GET    /api/tasks         reconciled statuses and per-status counts
- DELETE /api/tasks/{id}    best-effort cancel
- GET    /api/rate-limits   rate-limit and throttle statistics
- GET    /api/health        liveness probe
"""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from genorch import __version__
from genorch.orchestrator.session import GenerationSession
from genorch.schemas.generation import GenerationRequest, TaskStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ============================================================================
# Request/Response Models
# ============================================================================

class GenerationItem(BaseModel):
    """One prompt in a POST /generations body."""

    prompt: str = Field(min_length=1)
    scene_id: Optional[str] = None


class SubmitGenerationsRequest(BaseModel):
    """Request body for POST /generations."""

    items: list[GenerationItem] = Field(min_length=1)
    type: Literal["image", "video"] = "image"
    config_id: str = "default"
    concurrency_cap: Optional[int] = Field(default=None, ge=1)


class SubmitGenerationsResponse(BaseModel):
    """Response for POST /generations."""

    request_ids: list[str]
    status: str
    status_url: str


class TaskListResponse(BaseModel):
    """Response for GET /tasks."""

    tasks: list[TaskStatus]
    counts: dict[str, int]


class CancelResponse(BaseModel):
    """Response for DELETE /tasks/{id}."""

    id: str
    cancelled: bool


# ============================================================================
# Dependencies
# ============================================================================

def get_generation_session(request: Request) -> GenerationSession:
    """Session created by the application lifespan."""
    return request.app.state.generation_session


async def _run_submission(
    session: GenerationSession,
    requests: list[GenerationRequest],
    concurrency_cap: Optional[int],
) -> None:
    """Background task wrapper; failures are logged, the view carries them."""
    try:
        results = await session.submit(requests, concurrency_cap=concurrency_cap)
    except Exception as e:
        logger.error(f"Background submission failed: {type(e).__name__}: {str(e)}")
        return
    if results.aborted:
        logger.warning(
            f"Submission aborted: {results.abort_reason} "
            f"({len(results.skipped_ids)} request(s) not dispatched)"
        )


# ============================================================================
# Endpoint Handlers
# ============================================================================

@router.post("/generations", status_code=202, response_model=SubmitGenerationsResponse)
async def submit_generations(
    body: SubmitGenerationsRequest,
    background_tasks: BackgroundTasks,
    session: GenerationSession = Depends(get_generation_session),
):
    """Queue generation requests and run them in the background.

    Returns 202 Accepted with the request ids; progress is visible
    through GET /api/tasks.
    """
    requests = [
        GenerationRequest(
            prompt=item.prompt,
            scene_id=item.scene_id,
            type=body.type,
            config_id=body.config_id,
        )
        for item in body.items
    ]
    background_tasks.add_task(_run_submission, session, requests, body.concurrency_cap)
    return SubmitGenerationsResponse(
        request_ids=[r.id for r in requests],
        status="accepted",
        status_url="/api/tasks",
    )


@router.get("/tasks", response_model=TaskListResponse)
async def list_tasks(session: GenerationSession = Depends(get_generation_session)):
    """Return the reconciled task view, newest first."""
    tasks = session.get_reconciled_statuses()
    return TaskListResponse(tasks=tasks, counts=session.task_counts())


@router.delete("/tasks/{task_id}", response_model=CancelResponse)
async def cancel_task(task_id: str, session: GenerationSession = Depends(get_generation_session)):
    """Cancel a pending or in-flight task. Remote provider work is not cancelled."""
    if not session.cancel(task_id):
        raise HTTPException(status_code=404, detail="Task not found or already finished")
    return CancelResponse(id=task_id, cancelled=True)


@router.get("/rate-limits")
async def rate_limits(session: GenerationSession = Depends(get_generation_session)):
    """Rate-limit history and throttle cache statistics."""
    return session.rate_limit_stats()


@router.get("/health")
async def health():
    return {"status": "ok", "version": __version__}
