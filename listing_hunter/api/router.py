from fastapi import APIRouter

from listing_hunter.api.routes import calibration, documents, health, listings, pipeline

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(listings.router, prefix="/listings", tags=["listings"])
api_router.include_router(documents.router, prefix="/documents", tags=["documents"])
api_router.include_router(pipeline.router, prefix="/pipeline", tags=["pipeline"])
api_router.include_router(calibration.router, prefix="/calibration", tags=["calibration"])
