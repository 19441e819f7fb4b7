from typing import Literal

from pydantic import BaseModel

DocumentType = Literal["preference_profile", "calibration_log"]
DOCUMENT_TYPES: tuple[DocumentType, ...] = ("preference_profile", "calibration_log")


class DocumentRecord(BaseModel):
    type: DocumentType
    content: str
    updated_at: str


class DocumentsOut(BaseModel):
    preference_profile: str | None = None
    calibration_log: str | None = None


class DocumentPutRequest(BaseModel):
    content: str
