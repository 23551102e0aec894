"""
Chat API Endpoint.

Handles conversational messages for the calendar assistant. The caller is
already authenticated upstream; the user identity arrives in X-User-ID.
"""

import logging
from datetime import datetime
from typing import Optional, Union

from fastapi import APIRouter, HTTPException, Header, status
from pydantic import BaseModel, Field, field_validator

from calendar_assistant.config import settings
from calendar_assistant.core.scheduling.engine import get_scheduling_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["Chat"])


class ChatRequest(BaseModel):
    """Chat message request."""

    message: str = Field(
        ...,
        min_length=1,
        max_length=2000,
        description="User's message",
        examples=["Schedule a project sync with ana@example.com tomorrow at 2pm"],
    )
    timezone: Optional[str] = Field(
        default=None,
        max_length=64,
        description="IANA timezone of the user's device",
        examples=["Europe/Berlin"],
    )
    model: Optional[str] = Field(
        default=None,
        max_length=100,
        description="Language model to use for this message (see GET /api/chat/models)",
        examples=["claude-3-5-sonnet-20241022"],
    )

    @field_validator("model")
    @classmethod
    def _check_model(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        if value not in settings.allowed_models_list:
            raise ValueError(f"unsupported model {value!r}")
        return value


class ModelsResponse(BaseModel):
    """Models a chat request may select."""

    models: list[str]
    intent_model: str
    response_model: str


class SlotOption(BaseModel):
    """One offered time slot."""

    start: str
    end: str
    index: int
    label: str
    score: float


class ChatResponse(BaseModel):
    """Chat response (camelCase, as rendered by the chat widget)."""

    success: bool = Field(..., description="False for calendar or internal failures")
    message: str = Field(..., description="Assistant reply text")
    code: str = Field(..., description="Outcome code for the UI")
    followUp: Optional[str] = Field(default=None, description="Question awaiting an answer")
    pending: Optional[Union[list[str], bool]] = Field(
        default=None,
        description="Missing fields, or whether a slot choice is pending",
    )
    collectedParams: Optional[dict] = Field(default=None, description="Meeting details so far")
    availableSlots: Optional[list[SlotOption]] = Field(default=None, description="Offered slots")
    event: Optional[dict] = Field(default=None, description="Created event")
    events: Optional[list[dict]] = Field(default=None, description="Events for a schedule lookup")


class SessionResponse(BaseModel):
    """Conversation state snapshot."""

    user_id: str
    stage: str
    params: dict
    missing_fields: list[str]
    offered_slots: list[dict]
    expected_field: Optional[str] = None
    timezone: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ErrorResponse(BaseModel):
    """Error response."""

    error: str
    detail: Optional[str] = None


def _require_user(x_user_id: str) -> str:
    user_id = x_user_id.strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-User-ID header is required",
        )
    return user_id


@router.post(
    "/message",
    response_model=ChatResponse,
    response_model_exclude_none=True,
    status_code=status.HTTP_200_OK,
    summary="Send a chat message",
    description="Send a message to the calendar assistant and get its reply.",
    responses={
        200: {"description": "Successful response"},
        400: {"model": ErrorResponse, "description": "Missing user identity"},
        422: {"model": ErrorResponse, "description": "Invalid request"},
    },
)
async def send_message(
    request: ChatRequest,
    x_user_id: str = Header(
        ...,
        alias="X-User-ID",
        description="Authenticated user identifier",
    ),
) -> ChatResponse:
    """
    Process a chat message.

    Calendar failures are reported in the body (success=false plus a code);
    the engine always produces a reply.
    """
    user_id = _require_user(x_user_id)

    engine = get_scheduling_engine()
    payload = await engine.process_turn(
        user_id, request.message, request.timezone, request.model
    )

    return ChatResponse(**payload.to_dict())


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List selectable models",
    description="Models accepted in the `model` field of a chat message.",
)
async def list_models() -> ModelsResponse:
    """List the configured language models."""
    return ModelsResponse(
        models=settings.allowed_models_list,
        intent_model=settings.claude_intent_model,
        response_model=settings.claude_response_model,
    )


@router.get(
    "/session",
    response_model=SessionResponse,
    summary="Get conversation state",
    description="Inspect the user's in-progress scheduling negotiation.",
)
async def get_session(
    x_user_id: str = Header(
        ...,
        alias="X-User-ID",
        description="Authenticated user identifier",
    ),
) -> SessionResponse:
    """Get the current conversation state."""
    user_id = _require_user(x_user_id)

    engine = get_scheduling_engine()
    state = await engine.get_state(user_id)

    return SessionResponse(**state.to_dict())


@router.delete(
    "/session",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Reset conversation",
    description="Drop any in-progress scheduling negotiation.",
)
async def reset_session(
    x_user_id: str = Header(
        ...,
        alias="X-User-ID",
        description="Authenticated user identifier",
    ),
) -> None:
    """Reset the conversation to idle."""
    user_id = _require_user(x_user_id)

    engine = get_scheduling_engine()
    await engine.reset_state(user_id)
    logger.info(f"Conversation reset via API for user {user_id}")
