"""
Conversation Endpoints.

Operator access to conversation sessions: inspect and reset.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel

from appointment_bot.core.conversation import get_conversation_store
from appointment_bot.core.phone import mask_phone, normalize_phone

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/conversations", tags=["Conversations"])


class ConversationSnapshot(BaseModel):
    """Current state of a conversation."""

    phone: str
    stage: str
    updated_at: str
    last_invite_at: Optional[str] = None
    last_list_at: Optional[str] = None
    offer_from_iso: Optional[str] = None
    last_slots: list[dict]
    history: list[dict]


def _key(phone: str) -> str:
    return normalize_phone(phone) or phone


@router.get(
    "/{phone}",
    response_model=ConversationSnapshot,
    summary="Get conversation",
    responses={404: {"description": "Conversation not found"}},
)
async def get_conversation(phone: str) -> ConversationSnapshot:
    """Get the live session for a phone."""
    session = await get_conversation_store().load(_key(phone))

    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Conversation not found",
        )

    return ConversationSnapshot(**session.to_dict())


@router.delete(
    "/{phone}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Reset conversation",
    responses={404: {"description": "Conversation not found"}},
)
async def reset_conversation(phone: str) -> None:
    """Delete the session for a phone (waits for an in-flight turn)."""
    deleted = await get_conversation_store().reset(_key(phone))

    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Conversation not found",
        )

    logger.info(f"Conversation reset for {mask_phone(phone)}")
