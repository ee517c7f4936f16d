"""
Inbound Webhook Endpoint.

Receives patient messages from the WhatsApp gateway. The gateway
expects a fast answer, so the turn is processed in a background task
and the reply goes out through the gateway's send API.
"""

import logging
from typing import Optional, Union

from fastapi import APIRouter, BackgroundTasks, status
from pydantic import BaseModel, ConfigDict, Field

from appointment_bot.core.conversation import get_state_machine
from appointment_bot.core.phone import mask_phone, normalize_phone

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhook", tags=["Webhook"])


class GatewayText(BaseModel):
    """Text body as Z-API nests it."""

    message: str = ""


class InboundMessage(BaseModel):
    """Inbound message. Accepts the plain shape and Z-API's webhook shape."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    phone: str = Field(
        ...,
        min_length=8,
        max_length=32,
        description="Sender phone",
        examples=["5511987654321"],
    )
    text: Union[str, GatewayText] = Field(
        ...,
        description="Message text",
        examples=["I'd like to book an appointment"],
    )
    sender_name: Optional[str] = Field(default=None, alias="senderName")
    from_me: bool = Field(default=False, alias="fromMe")
    is_group: bool = Field(default=False, alias="isGroup")

    @property
    def message_text(self) -> str:
        raw = self.text.message if isinstance(self.text, GatewayText) else self.text
        return (raw or "").strip()[:2000]


class AcceptedResponse(BaseModel):
    """Acknowledgement returned to the gateway."""

    status: str = Field(..., description="accepted or ignored")
    reason: Optional[str] = None


async def process_inbound(phone: str, text: str, sender_name: Optional[str]) -> None:
    """Run one conversation turn; errors are logged, never raised."""
    try:
        machine = get_state_machine()
        result = await machine.handle_message(phone, text, sender_name=sender_name)
        logger.info(
            f"Turn for {mask_phone(phone)} done: stage={result.stage.value} "
            f"grounded={result.grounded} sent={result.sent}"
        )
    except Exception as e:
        logger.exception(f"Error processing message from {mask_phone(phone)}: {e}")


@router.post(
    "/inbound",
    response_model=AcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Receive a patient message",
    description="Accepts a message and processes it asynchronously.",
)
async def inbound(message: InboundMessage, background_tasks: BackgroundTasks) -> AcceptedResponse:
    """
    Accept an inbound message.

    Messages sent by the clinic's own number, group messages, empty
    texts and unusable phones are acknowledged and ignored.
    """
    if message.from_me or message.is_group:
        return AcceptedResponse(status="ignored", reason="not a patient message")

    phone = normalize_phone(message.phone)
    if phone is None:
        logger.warning(f"Ignoring message from unusable phone {mask_phone(message.phone)}")
        return AcceptedResponse(status="ignored", reason="invalid phone")

    text = message.message_text
    if not text:
        return AcceptedResponse(status="ignored", reason="empty message")

    logger.info(f"Message from {mask_phone(phone)}: {text[:80]!r}")
    background_tasks.add_task(process_inbound, phone, text, message.sender_name)
    return AcceptedResponse(status="accepted")
