from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api import deps
from app.db.session import get_db
from app.schemas.loan import PipelineRunDTO, PipelineRunList, PipelineStage, PipelineStatus
from app.services import pipeline_queue
from app.services.pipeline_queue import PipelineSupervisor


router = APIRouter(prefix="/pipeline-runs", tags=["pipeline-runs"])


@router.get("", response_model=PipelineRunList, summary="List journaled pipeline runs")
async def list_pipeline_runs(
    status_filter: PipelineStatus | None = Query(default=None, alias="status"),
    stage: PipelineStage | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> PipelineRunList:
    runs, total = await pipeline_queue.list_runs(
        db, status=status_filter, stage=stage, limit=limit, offset=offset
    )
    return PipelineRunList(
        items=[PipelineRunDTO.model_validate(run) for run in runs],
        total=total,
    )


@router.get("/{run_id}", response_model=PipelineRunDTO, summary="Inspect a pipeline run")
async def get_pipeline_run(run_id: str, db: AsyncSession = Depends(get_db)) -> PipelineRunDTO:
    run = await pipeline_queue.get_run(db, run_id)
    return PipelineRunDTO.model_validate(run)


@router.post(
    "/{run_id}/retry",
    response_model=PipelineRunDTO,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Re-drive a failed pipeline run",
)
async def retry_pipeline_run(
    run_id: str,
    supervisor: PipelineSupervisor = Depends(deps.get_supervisor),
) -> PipelineRunDTO:
    run = await supervisor.retry(run_id)
    return PipelineRunDTO.model_validate(run)
