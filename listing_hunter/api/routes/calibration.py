from fastapi import APIRouter, Depends, HTTPException, status as http_status

from listing_hunter.schemas.pipeline import CalibrationResult
from listing_hunter.services.hunter import get_hunter
from listing_hunter.services.repository import RepositoryUnavailableError

router = APIRouter()


@router.post("", response_model=CalibrationResult)
async def run_calibration(hunter=Depends(get_hunter)) -> CalibrationResult:
    if hunter.calibration.calibrate is None:
        raise HTTPException(
            status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="no calibrate collaborator configured",
        )
    try:
        return await hunter.run_calibration()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.get("/status")
async def calibration_status(hunter=Depends(get_hunter)) -> dict[str, int | bool]:
    try:
        pending = await hunter.calibration.pending_overrides()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return {
        "in_flight": hunter.calibration.in_flight,
        "pending_overrides": pending,
        "threshold": hunter.calibration.threshold,
    }
