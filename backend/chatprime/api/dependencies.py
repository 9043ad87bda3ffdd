"""
FastAPI dependencies shared by the v1 routers.

The gateway is created once in the application lifespan and stored on
app.state; routes receive it through Depends(get_gateway) so tests can swap
it with app.dependency_overrides.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request, UploadFile

from chatprime.core.errors import ConfigurationError
from chatprime.llm.gateway import LLMGateway
from chatprime.schemas.uploads import check_upload
from chatprime.storage.uploads import UploadedFile


def get_gateway(request: Request) -> LLMGateway:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise ConfigurationError("Gateway not initialised")
    return gateway


Gateway = Annotated[LLMGateway, Depends(get_gateway)]


def public_base_url(request: Request) -> str:
    """Scheme + host the client used, e.g. "https://api.example.com"."""
    return str(request.base_url).rstrip("/")


async def store_uploads(gateway: LLMGateway, uploads: list[UploadFile]) -> list[UploadedFile]:
    """
    Validate every upload first, then persist them. Nothing is written unless
    the whole batch passes the boundary checks.
    """
    max_bytes = gateway.settings.max_upload_bytes
    staged: list[tuple[str, str, bytes]] = []
    for upload in uploads:
        data = await upload.read()
        content_type = check_upload(upload.filename, upload.content_type, len(data), max_bytes)
        staged.append((upload.filename or "upload", content_type, data))

    stored: list[UploadedFile] = []
    for name, content_type, data in staged:
        stored.append(await gateway.store.save(data, name, content_type))
    return stored
