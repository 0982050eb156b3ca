"""
Document API Router

  POST /api/v1/documents/upload               stage a file, enqueue intake (202)
  GET  /api/v1/documents/{document_id}/status poll pipeline progress
  POST /api/v1/documents/{document_id}/reprocess
                                              re-run a completed/failed document (202)

Processing is asynchronous: the upload returns as soon as the file is staged
and the intake job is queued.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, File, HTTPException, UploadFile, status
from fastapi.responses import JSONResponse

from docflow.api.dependencies import Ingestion, Store
from docflow.schemas.documents import (
    DocumentReprocessResponse,
    DocumentStatusResponse,
    DocumentUploadResponse,
    ErrorResponse,
    UploadErrors,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Documents"],
)


# ---------------------------------------------------------------------------
# POST /documents/upload
# ---------------------------------------------------------------------------

@router.post(
    "/upload",
    response_model=DocumentUploadResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a document for processing",
    description=(
        "Accepts pdf, doc, docx, jpg, jpeg, png, xlsx, dwg and dxf files up to the "
        "configured size limit. Returns 202 immediately; poll "
        "GET /documents/{id}/status for pipeline progress."
    ),
    responses={
        202: {"model": DocumentUploadResponse, "description": "File accepted for processing"},
        400: {"model": ErrorResponse, "description": "Missing, empty or unsupported file"},
        413: {"model": ErrorResponse, "description": "File exceeds the size limit"},
        500: {"model": ErrorResponse, "description": "Internal server error"},
    },
)
async def upload_document(
    ingestion: Ingestion,
    file: UploadFile = File(..., description="Document file"),
) -> JSONResponse:
    result = await ingestion.ingest(file)
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=result.model_dump(mode="json"),
        headers={
            "X-Document-ID": str(result.document_id),
            "Location":      f"/api/v1/documents/{result.document_id}/status",
        },
    )


# ---------------------------------------------------------------------------
# GET /documents/{document_id}/status
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}/status",
    response_model=DocumentStatusResponse,
    summary="Poll async processing status",
    responses={
        200: {"model": DocumentStatusResponse},
        404: {"model": ErrorResponse},
    },
)
async def get_document_status(document_id: int, store: Store) -> DocumentStatusResponse:
    doc = await store.find_by_id(document_id)
    if doc is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=UploadErrors.document_not_found(document_id).model_dump(),
        )
    return DocumentStatusResponse.from_record(doc)


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/reprocess
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/reprocess",
    response_model=DocumentReprocessResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Run the pipeline again for a completed or failed document",
    responses={
        202: {"model": DocumentReprocessResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse, "description": "Document is still pending or processing"},
        503: {"model": ErrorResponse, "description": "Processing queue unavailable"},
    },
)
async def reprocess_document(document_id: int, ingestion: Ingestion) -> DocumentReprocessResponse:
    return await ingestion.reprocess(document_id)
