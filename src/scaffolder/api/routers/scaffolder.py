from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, Field

from ...errors import NotFoundError, ScaffolderError
from ...services.orchestration import ScaffolderService, get_scaffolder_service

router = APIRouter(prefix="/scaffolder", tags=["scaffolder"])


class StartRequest(BaseModel):
    message: str = Field(..., min_length=1)
    owner_id: str = Field("anonymous", alias="ownerId")
    channel_id: Optional[str] = Field(None, alias="channelId")


class AnswerRequest(BaseModel):
    question_id: str = Field(..., alias="questionId")
    answer: Union[str, List[str]]


class ChatRequest(BaseModel):
    message: str


class RegenerateRequest(BaseModel):
    issues: str


class ConsentDecision(BaseModel):
    allowed: bool
    always: bool = False


def _http_error(service: ScaffolderService, err: ScaffolderError) -> HTTPException:
    return HTTPException(status_code=err.status_code, detail=err.to_dict(include_details=not service.config.is_production))


def _encode(result: Any) -> Dict[str, Any]:
    return jsonable_encoder(result, by_alias=True)


@router.post("/conversations", status_code=status.HTTP_201_CREATED)
async def start_conversation(
    req: StartRequest,
    service: ScaffolderService = Depends(get_scaffolder_service),
) -> Dict[str, Any]:
    try:
        result = await service.start(req.message, owner_id=req.owner_id, channel_id=req.channel_id)
    except ScaffolderError as err:
        raise _http_error(service, err) from err
    return _encode(result)


@router.get("/conversations/{conversation_id}")
def get_conversation(
    conversation_id: str,
    service: ScaffolderService = Depends(get_scaffolder_service),
) -> Dict[str, Any]:
    try:
        state = service.get_conversation(conversation_id)
    except ScaffolderError as err:
        raise _http_error(service, err) from err
    return _encode(state)


@router.get("/conversations/{conversation_id}/preview", response_class=HTMLResponse)
def preview(
    conversation_id: str,
    service: ScaffolderService = Depends(get_scaffolder_service),
) -> HTMLResponse:
    try:
        body = service.preview_html(conversation_id)
    except ScaffolderError as err:
        raise _http_error(service, err) from err
    return HTMLResponse(body)


@router.post("/conversations/{conversation_id}/answers")
async def answer_question(
    conversation_id: str,
    req: AnswerRequest,
    service: ScaffolderService = Depends(get_scaffolder_service),
) -> Dict[str, Any]:
    try:
        result = await service.answer(conversation_id, req.question_id, req.answer)
    except ScaffolderError as err:
        raise _http_error(service, err) from err
    return _encode(result)


@router.post("/conversations/{conversation_id}/chat")
async def chat(
    conversation_id: str,
    req: ChatRequest,
    service: ScaffolderService = Depends(get_scaffolder_service),
) -> Dict[str, Any]:
    try:
        result = await service.chat(conversation_id, req.message)
    except ScaffolderError as err:
        raise _http_error(service, err) from err
    return _encode(result)


@router.post("/conversations/{conversation_id}/undo")
async def undo(
    conversation_id: str,
    service: ScaffolderService = Depends(get_scaffolder_service),
) -> Dict[str, Any]:
    try:
        result = await service.undo(conversation_id)
    except ScaffolderError as err:
        raise _http_error(service, err) from err
    return _encode(result)


@router.post("/conversations/{conversation_id}/proposals/{proposal_id}/select")
async def select_proposal(
    conversation_id: str,
    proposal_id: str,
    service: ScaffolderService = Depends(get_scaffolder_service),
) -> Dict[str, Any]:
    try:
        result = await service.select_proposal(conversation_id, proposal_id)
    except ScaffolderError as err:
        raise _http_error(service, err) from err
    return _encode(result)


@router.post("/conversations/{conversation_id}/finalize")
async def finalize(
    conversation_id: str,
    service: ScaffolderService = Depends(get_scaffolder_service),
) -> Dict[str, Any]:
    try:
        result = await service.finalize(conversation_id)
    except ScaffolderError as err:
        raise _http_error(service, err) from err
    return _encode(result)


@router.post("/conversations/{conversation_id}/cancel")
def cancel(
    conversation_id: str,
    service: ScaffolderService = Depends(get_scaffolder_service),
) -> Dict[str, bool]:
    return {"cancelled": service.cancel(conversation_id)}


@router.get("/apps/{app_id}")
def get_app(
    app_id: str,
    service: ScaffolderService = Depends(get_scaffolder_service),
) -> Dict[str, Any]:
    try:
        record = service.get_app(app_id)
    except ScaffolderError as err:
        raise _http_error(service, err) from err
    return _encode(record)


@router.post("/apps/{app_id}/regenerate")
async def regenerate(
    app_id: str,
    req: RegenerateRequest,
    service: ScaffolderService = Depends(get_scaffolder_service),
) -> Dict[str, Any]:
    try:
        result = await service.regenerate(app_id, req.issues)
    except ScaffolderError as err:
        raise _http_error(service, err) from err
    return _encode(result)


@router.get("/consent")
def pending_consent(
    conversation_id: Optional[str] = Query(None, alias="conversationId"),
    service: ScaffolderService = Depends(get_scaffolder_service),
) -> Dict[str, Any]:
    return {"requests": [r.to_dict() for r in service.consent.pending(conversation_id)]}


@router.post("/consent/{request_id}")
def resolve_consent(
    request_id: str,
    decision: ConsentDecision,
    service: ScaffolderService = Depends(get_scaffolder_service),
) -> Dict[str, Any]:
    if not service.consent.resolve(request_id, decision.allowed, always=decision.always):
        raise _http_error(service, NotFoundError("Consent request", request_id))
    return {"requestId": request_id, "allowed": decision.allowed}
