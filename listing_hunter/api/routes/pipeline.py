import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status as http_status

from listing_hunter.schemas.pipeline import PipelineRunRecord, PipelineRunResult
from listing_hunter.services.collaborators import CollaboratorError
from listing_hunter.services.hunter import get_hunter
from listing_hunter.services.repository import RepositoryUnavailableError

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/runs", response_model=PipelineRunResult)
async def run_pipeline(hunter=Depends(get_hunter)) -> PipelineRunResult:
    if hunter.pipeline is None:
        raise HTTPException(
            status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="no discover collaborator configured",
        )
    try:
        return await hunter.run_pipeline()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except CollaboratorError as exc:
        raise HTTPException(status_code=http_status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("pipeline run request failed")
        raise HTTPException(status_code=http_status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc


@router.get("/runs", response_model=list[PipelineRunRecord])
async def list_runs(limit: int = Query(default=20, ge=1, le=100), hunter=Depends(get_hunter)) -> list[PipelineRunRecord]:
    try:
        return await hunter.pipeline_runs.list_recent(limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.get("/runs/latest", response_model=PipelineRunRecord)
async def get_latest_run(hunter=Depends(get_hunter)) -> PipelineRunRecord:
    try:
        record = await hunter.pipeline_runs.get_latest()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if record is None:
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail="no pipeline runs yet")
    return record


@router.get("/runs/{run_id}", response_model=PipelineRunRecord)
async def get_run(run_id: str, hunter=Depends(get_hunter)) -> PipelineRunRecord:
    try:
        record = await hunter.pipeline_runs.get_by_id(run_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if record is None:
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail="pipeline run not found")
    return record
