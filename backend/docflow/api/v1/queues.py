"""
Queue & AI Service Inspection Router

  GET /api/v1/queues/stats                 per-kind waiting/active/completed/failed
  GET /api/v1/queues/{kind}/jobs/{job_id}  one job's state, progress, attempts
  GET /api/v1/ai/health                    OCR service + local Tesseract reachability

Unknown kinds and job ids raise QueueNotFoundError / JobNotFoundError,
which the app-level handler maps to 404.
"""

from __future__ import annotations

from fastapi import APIRouter

from docflow.api.dependencies import Gateway, Manager
from docflow.schemas.documents import ErrorResponse
from docflow.schemas.jobs import JobStatus, QueueCounts

router = APIRouter(tags=["Queues"])


@router.get(
    "/queues/stats",
    response_model=dict[str, QueueCounts],
    summary="Job counts per pipeline stage",
)
async def get_queue_stats(manager: Manager) -> dict[str, QueueCounts]:
    return await manager.get_queue_stats()


@router.get(
    "/queues/{kind}/jobs/{job_id}",
    response_model=JobStatus,
    summary="Inspect a single job",
    responses={404: {"model": ErrorResponse}},
)
async def get_job_status(kind: str, job_id: str, manager: Manager) -> JobStatus:
    return await manager.get_job_status(kind, job_id)


@router.get(
    "/ai/health",
    summary="AI service reachability",
)
async def ai_health(ai: Gateway) -> dict[str, bool]:
    return await ai.health_check()
