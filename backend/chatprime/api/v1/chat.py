"""
Chat API — OpenAI-compatible endpoints

POST /v1/chat/completions   → JSON, or multipart/form-data with up to 3 files
POST /v1/completions        → legacy prompt API, wrapped as chat
POST /v1/moderations        → fail-open moderation passthrough
GET  /v1/models             → upstream model list, static fallback

Multipart form layout for /v1/chat/completions:
  payload   JSON string with the full chat body           (preferred)
  model, messages, temperature, max_tokens, stream
            individual fields, used when payload is absent; messages is a
            JSON-encoded list
  files     up to 3 attachments (images, PDF, text, Word, Excel)

Responses:
  buffered  upstream status + body verbatim, X-Model-Used header
  stream    text/event-stream relay, X-Model-Used header; the upstream read
            is aborted when the client disconnects
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, Request, UploadFile
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import ValidationError
from starlette.background import BackgroundTask

from chatprime.api.dependencies import Gateway, public_base_url, store_uploads
from chatprime.core.errors import InvalidRequestError
from chatprime.llm.gateway import GatewayResponse, StreamingGatewayResponse
from chatprime.llm.streaming import SSE_HEADERS, CancelToken, watch_disconnect
from chatprime.schemas.chat import ChatRequest, CompletionRequest, ErrorResponse, ModerationRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["Chat"])

_FORM_FIELDS = ("model", "temperature", "max_tokens", "stream")

_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: {"model": ErrorResponse, "description": "Invalid payload, file type, or file size"},
    500: {"model": ErrorResponse, "description": "Missing credential or upstream unavailable"},
}


# ---------------------------------------------------------------------------
# Request parsing
# ---------------------------------------------------------------------------

def _load_json(raw: str | bytes, field: str) -> Any:
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise InvalidRequestError(f"'{field}' is not valid JSON: {exc}", field=field) from exc


def _validate(model: type, data: Any) -> Any:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        loc   = ".".join(str(p) for p in first["loc"]) or None
        raise InvalidRequestError(f"Invalid request body: {first['msg']}", field=loc) from exc


async def _parse_chat_request(request: Request, max_files: int) -> tuple[ChatRequest, list[UploadFile]]:
    content_type = request.headers.get("content-type", "")

    if not content_type.startswith("multipart/form-data"):
        body = await request.body()
        data = _load_json(body or b"{}", "body")
        if not isinstance(data, dict):
            raise InvalidRequestError("Request body must be a JSON object")
        return _validate(ChatRequest, data), []

    form    = await request.form()
    uploads = [f for f in form.getlist("files") if hasattr(f, "filename")]
    if len(uploads) > max_files:
        raise InvalidRequestError(f"At most {max_files} files may be attached", field="files")

    payload = form.get("payload")
    if isinstance(payload, str) and payload:
        data = _load_json(payload, "payload")
        if not isinstance(data, dict):
            raise InvalidRequestError("'payload' must be a JSON object", field="payload")
    else:
        data = {k: form[k] for k in _FORM_FIELDS if isinstance(form.get(k), str) and form[k] != ""}
        messages = form.get("messages")
        if isinstance(messages, str) and messages:
            data["messages"] = _load_json(messages, "messages")

    return _validate(ChatRequest, data), uploads


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def _render(
    result:  GatewayResponse | StreamingGatewayResponse,
    request: Request,
    token:   CancelToken,
) -> Response:
    if isinstance(result, GatewayResponse):
        return Response(
            content=result.body,
            status_code=result.status_code,
            media_type=result.content_type,
            headers=result.headers,
        )

    watcher = asyncio.create_task(watch_disconnect(request.is_disconnected, token))

    async def cleanup() -> None:
        watcher.cancel()
        await result.aclose()

    return StreamingResponse(
        result,
        media_type=result.media_type,
        headers={**SSE_HEADERS, **result.headers},
        background=BackgroundTask(cleanup),
    )


# ---------------------------------------------------------------------------
# POST /v1/chat/completions
# ---------------------------------------------------------------------------

@router.post(
    "/chat/completions",
    summary="Chat completion with optional file attachments",
    description=(
        "OpenAI-compatible chat completion. Accepts a JSON body or a multipart form "
        "with up to 3 files whose text is extracted and attached to the last user "
        "message. The model is auto-selected when omitted."
    ),
    responses=_ERROR_RESPONSES,
)
async def chat_completions(request: Request, gateway: Gateway) -> Response:
    body, uploads = await _parse_chat_request(request, gateway.settings.max_files)
    files = await store_uploads(gateway, uploads)

    logger.info(
        "ChatAPI | messages=%d files=%d stream=%s model=%s",
        len(body.messages), len(files), body.stream, body.model or "auto",
    )

    token  = CancelToken()
    result = await gateway.chat(body, files, base_url=public_base_url(request), cancel=token)
    return _render(result, request, token)


# ---------------------------------------------------------------------------
# POST /v1/completions  (legacy)
# ---------------------------------------------------------------------------

@router.post(
    "/completions",
    summary="Legacy text completion",
    description="Wraps the prompt as a system + user chat and reshapes the answer as text_completion.",
    responses=_ERROR_RESPONSES,
)
async def completions(body: CompletionRequest, request: Request, gateway: Gateway) -> Response:
    token  = CancelToken()
    result = await gateway.complete(body, base_url=public_base_url(request), cancel=token)
    return _render(result, request, token)


# ---------------------------------------------------------------------------
# POST /v1/moderations
# ---------------------------------------------------------------------------

@router.post(
    "/moderations",
    summary="Content moderation (fail-open)",
    description="Never blocks: any failure yields {flagged: false, bypassed: true}.",
)
async def moderations(body: ModerationRequest, gateway: Gateway) -> JSONResponse:
    return JSONResponse(content=await gateway.moderate(body.input))


# ---------------------------------------------------------------------------
# GET /v1/models
# ---------------------------------------------------------------------------

@router.get("/models", summary="List available models")
async def list_models(gateway: Gateway) -> JSONResponse:
    return JSONResponse(content=await gateway.list_models())
