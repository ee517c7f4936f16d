"""Conversation stage machine."""

from enum import Enum
from typing import Set


class ConversationStage(str, Enum):
    """Stages of a scheduling conversation."""

    IDLE = "idle"
    AWAITING_SLOT_CHOICE = "awaiting_slot_choice"
    COLLECTING_DETAILS = "collecting_details"
    CONFIRMED = "confirmed"


# Valid stage transitions. A reset phrase deletes the session, so any
# stage may also fall back to IDLE.
VALID_TRANSITIONS: dict[ConversationStage, Set[ConversationStage]] = {
    ConversationStage.IDLE: {
        ConversationStage.AWAITING_SLOT_CHOICE,
        ConversationStage.CONFIRMED,
    },
    ConversationStage.AWAITING_SLOT_CHOICE: {
        ConversationStage.AWAITING_SLOT_CHOICE,  # new offer (pagination)
        ConversationStage.COLLECTING_DETAILS,
        ConversationStage.CONFIRMED,
        ConversationStage.IDLE,
    },
    ConversationStage.COLLECTING_DETAILS: {
        ConversationStage.AWAITING_SLOT_CHOICE,  # patient asked for other times
        ConversationStage.CONFIRMED,
        ConversationStage.IDLE,
    },
    ConversationStage.CONFIRMED: {
        ConversationStage.AWAITING_SLOT_CHOICE,  # books another appointment
        ConversationStage.IDLE,
    },
}


def can_transition(from_stage: ConversationStage, to_stage: ConversationStage) -> bool:
    """Check if a stage transition is valid."""
    return to_stage in VALID_TRANSITIONS.get(from_stage, set())
