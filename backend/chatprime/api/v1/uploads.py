"""
Upload API

POST /upload             → store one file, return its public URL + text excerpt
POST /v1/images/upload   → same handler, kept for clients of the image endpoint

The stored file is served at /uploads/<name> until the reaper expires it.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, File, Request, UploadFile, status
from fastapi.responses import JSONResponse

from chatprime.api.dependencies import Gateway, public_base_url
from chatprime.schemas.chat import ErrorResponse
from chatprime.schemas.uploads import UploadResponse, check_upload

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Uploads"])


@router.post(
    "/upload",
    response_model=UploadResponse,
    summary="Upload a single file",
    description="Images, PDF, text, Markdown, Word and Excel files up to 10 MB.",
    responses={
        400: {"model": ErrorResponse, "description": "Unsupported type or file too large"},
    },
)
@router.post(
    "/v1/images/upload",
    response_model=UploadResponse,
    summary="Upload a single file (image endpoint alias)",
    include_in_schema=False,
)
async def upload_file(
    request: Request,
    gateway: Gateway,
    file:    UploadFile = File(..., description="File to upload (max 10 MB)"),
) -> JSONResponse:
    data         = await file.read()
    content_type = check_upload(file.filename, file.content_type, len(data), gateway.settings.max_upload_bytes)

    result = await gateway.ingest_upload(
        data, file.filename or "upload", content_type, base_url=public_base_url(request),
    )
    logger.info(
        "UploadAPI | stored id=%s type=%s bytes=%d truncated=%s",
        result.file.id, content_type, result.file.byte_size, result.truncated,
    )

    body = UploadResponse(
        url=result.url,
        file_name=result.file.original_name,
        file_size=result.file.byte_size,
        mime_type=result.file.mimetype,
        extracted_text=result.excerpt,
        full_text_available=result.truncated,
    )
    return JSONResponse(status_code=status.HTTP_200_OK, content=body.model_dump(by_alias=True))
