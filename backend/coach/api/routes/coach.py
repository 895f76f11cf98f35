"""Coach API routes.

This module provides endpoints for:
- Posting a message and receiving a coached reply
- Reading a conversation's messages, or the opener for a fresh session
- Starting or resuming a session
- Listing the caller's conversations
"""

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Query

from coach.api.deps import CurrentUser, Orchestrator
from coach.core.exceptions import ValidationError
from coach.models.coach import PostMessageRequest, PostMessageResponse

router = APIRouter(prefix="/coach", tags=["coach"])
logger = logging.getLogger(__name__)


@router.post(
    "/messages",
    response_model=PostMessageResponse,
    response_model_by_alias=True,
)
async def post_message(
    request: PostMessageRequest,
    current_user: CurrentUser,
    orchestrator: Orchestrator,
) -> dict[str, Any]:
    """Send a message to the coach and get a reply.

    Creates the conversation when no ``conversationId`` is given. Free-tier
    users past the weekly limit get a 402 before anything is stored.
    """
    reply = await orchestrator.post_message(
        user_id=current_user.id,
        message=request.message,
        couple_id=request.couple_id,
        conversation_id=request.conversation_id,
    )
    return reply.to_dict()


@router.get("/messages")
async def get_messages(
    current_user: CurrentUser,
    orchestrator: Orchestrator,
    conversation_id: Annotated[str | None, Query(alias="conversationId")] = None,
    get_opener: Annotated[bool, Query(alias="getOpener")] = False,
    couple_id: Annotated[str | None, Query(alias="coupleId")] = None,
) -> dict[str, Any]:
    """Messages of a conversation, or the opener payload with ``getOpener=true``."""
    if get_opener:
        if not couple_id:
            raise ValidationError("Couple ID is required", field="coupleId")
        opener = await orchestrator.get_opener(current_user.id, couple_id)
        return opener.to_dict()

    if not conversation_id:
        raise ValidationError("Conversation ID is required", field="conversationId")

    return await orchestrator.get_messages(current_user.id, conversation_id)


@router.get("/session")
async def start_or_resume(
    current_user: CurrentUser,
    orchestrator: Orchestrator,
    couple_id: Annotated[str | None, Query(alias="coupleId")] = None,
) -> dict[str, Any]:
    """Resume the latest conversation updated in the last 24 hours, or get an opener."""
    session = await orchestrator.start_or_resume(current_user.id, couple_id)
    return session.to_dict()


@router.get("/conversations")
async def list_conversations(
    current_user: CurrentUser,
    orchestrator: Orchestrator,
) -> dict[str, Any]:
    """The caller's most recently updated conversations."""
    conversations = await orchestrator.list_conversations(current_user.id)
    return {"conversations": [c.to_dict() for c in conversations]}
