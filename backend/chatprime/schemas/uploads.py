"""
Upload — allowed types, size ceiling and response schema.

The upload boundary rejects oversized files and unsupported types with 400
before anything reaches the gateway core.
"""

from __future__ import annotations

import mimetypes

from pydantic import BaseModel, ConfigDict, Field

from chatprime.core.errors import FileTooLargeError, UnsupportedFileTypeError


# ---------------------------------------------------------------------------
# Allowed MIME types, enforced before the file is written to disk
# ---------------------------------------------------------------------------

ALLOWED_CONTENT_TYPES: frozenset[str] = frozenset(
    {
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "application/pdf",
        "text/plain",
        "text/markdown",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",  # .docx
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",        # .xlsx
        "application/vnd.ms-excel",                                                 # .xls
    }
)


class UploadResponse(BaseModel):
    """Returned by POST /upload and POST /v1/images/upload."""
    model_config = ConfigDict(populate_by_name=True)

    success:             bool = True
    url:                 str
    file_name:           str  = Field(..., alias="fileName")
    file_size:           int  = Field(..., alias="fileSize")
    mime_type:           str  = Field(..., alias="mimeType")
    extracted_text:      str  = Field("", alias="extractedText", description="First 2000 characters")
    full_text_available: bool = Field(False, alias="fullTextAvailable")


# ---------------------------------------------------------------------------
# Boundary validation
# ---------------------------------------------------------------------------

_EXTENSION_TYPES: dict[str, str] = {
    ".md":   "text/markdown",
    ".txt":  "text/plain",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".xls":  "application/vnd.ms-excel",
}


def resolve_content_type(filename: str | None, declared: str | None) -> str:
    """
    Use the client's declared type; fall back to the extension when the
    client sent none or a generic octet-stream.
    """
    declared = (declared or "").split(";", 1)[0].strip().lower()
    if declared and declared != "application/octet-stream":
        return declared

    name = (filename or "").lower()
    for ext, content_type in _EXTENSION_TYPES.items():
        if name.endswith(ext):
            return content_type
    guessed, _ = mimetypes.guess_type(name)
    return guessed or declared or "application/octet-stream"


def check_upload(filename: str | None, declared_type: str | None, size: int, max_bytes: int) -> str:
    """
    Validate one upload. Returns the resolved content type.

    Raises:
        FileTooLargeError:        size above max_bytes
        UnsupportedFileTypeError: content type not in ALLOWED_CONTENT_TYPES
    """
    if size > max_bytes:
        raise FileTooLargeError(
            f"File size must be less than {max_bytes // (1024 * 1024)}MB "
            f"(received {size:,} bytes)",
            field="file",
        )
    content_type = resolve_content_type(filename, declared_type)
    if content_type not in ALLOWED_CONTENT_TYPES:
        raise UnsupportedFileTypeError(
            f"Unsupported file type: {content_type}",
            field="file",
        )
    return content_type
