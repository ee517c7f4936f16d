"""
Conversation Module

Per-patient dialog state, intent signals and the grounded reply flow.

Usage:
    from appointment_bot.core.conversation import get_state_machine

    machine = get_state_machine()
    result = await machine.handle_message("5511987654321", "I'd like to book")
"""

from appointment_bot.core.conversation.machine import (
    ConversationStateMachine,
    TurnResult,
    build_state_machine,
    drain_state_machine,
    get_state_machine,
)
from appointment_bot.core.conversation.models import ConversationSession
from appointment_bot.core.conversation.state import ConversationStage, can_transition
from appointment_bot.core.conversation.store import ConversationStore, get_conversation_store

__all__ = [
    "ConversationSession",
    "ConversationStage",
    "ConversationStateMachine",
    "ConversationStore",
    "TurnResult",
    "build_state_machine",
    "can_transition",
    "drain_state_machine",
    "get_conversation_store",
    "get_state_machine",
]
