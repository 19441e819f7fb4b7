from fastapi import APIRouter, Depends, HTTPException, status as http_status

from listing_hunter.schemas.documents import DocumentPutRequest, DocumentRecord, DocumentsOut, DocumentType
from listing_hunter.services.hunter import get_hunter
from listing_hunter.services.repository import RepositoryUnavailableError

router = APIRouter()


@router.get("", response_model=DocumentsOut)
async def get_documents(hunter=Depends(get_hunter)) -> DocumentsOut:
    try:
        records = await hunter.documents.get_all()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return DocumentsOut(**{record.type: record.content for record in records})


@router.put("/{document_type}", response_model=DocumentRecord)
async def put_document(
    document_type: DocumentType,
    payload: DocumentPutRequest,
    hunter=Depends(get_hunter),
) -> DocumentRecord:
    try:
        return await hunter.documents.set(document_type, payload.content)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
