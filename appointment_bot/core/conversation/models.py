"""
Conversation session data model.

One session per patient phone. Stored as JSON in Redis (or in process
when Redis is down) and mutated once per inbound message.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from appointment_bot.core.availability.types import Slot
from appointment_bot.core.conversation.state import ConversationStage

# History bounds
MAX_HISTORY_MESSAGES = 20
MAX_MESSAGE_CHARS = 1200

ROLE_PATIENT = "patient"
ROLE_ASSISTANT = "assistant"
ROLE_SYSTEM_CONTEXT = "system-context"
ROLES = {ROLE_PATIENT, ROLE_ASSISTANT, ROLE_SYSTEM_CONTEXT}


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class ConversationSession:
    """
    Per-patient dialog state.

    - history: bounded list of {"role", "content"} messages
    - last_invite_at: when the assistant last invited the patient to book
    - last_list_at: when slots were last shown
    - offer_from_iso: pagination cursor for the current offer
    - last_slots: the slots of the last offer actually sent
    """

    phone: str
    history: list[dict] = field(default_factory=list)
    stage: ConversationStage = ConversationStage.IDLE
    updated_at: datetime = field(default_factory=_utcnow)
    last_invite_at: Optional[datetime] = None
    last_list_at: Optional[datetime] = None
    offer_from_iso: Optional[str] = None
    last_slots: list[Slot] = field(default_factory=list)

    def add_message(self, role: str, content: str) -> None:
        """Append a message, truncating it and dropping the oldest overflow."""
        if role not in ROLES:
            raise ValueError(f"Unknown history role: {role}")
        self.history.append({"role": role, "content": (content or "")[:MAX_MESSAGE_CHARS]})
        if len(self.history) > MAX_HISTORY_MESSAGES:
            self.history = self.history[-MAX_HISTORY_MESSAGES:]

    def render_context(self) -> str:
        """Render history as a transcript for the responder."""
        labels = {
            ROLE_PATIENT: "Patient",
            ROLE_ASSISTANT: "Assistant",
            ROLE_SYSTEM_CONTEXT: "System",
        }
        return "\n".join(f"{labels[m['role']]}: {m['content']}" for m in self.history)

    @property
    def offer_from(self) -> Optional[datetime]:
        return _parse_iso(self.offer_from_iso)

    def find_offered_slot(self, start: datetime) -> Optional[Slot]:
        """The slot of the last offer starting at start, if any."""
        for slot in self.last_slots:
            if slot.start == start:
                return slot
        return None

    def to_json(self) -> str:
        """Convert to JSON string for Redis storage."""
        data = {
            "phone": self.phone,
            "history": self.history,
            "stage": self.stage.value,
            "updated_at": self.updated_at.isoformat(),
            "last_invite_at": _iso(self.last_invite_at),
            "last_list_at": _iso(self.last_list_at),
            "offer_from_iso": self.offer_from_iso,
            "last_slots": [slot.to_dict() for slot in self.last_slots],
        }
        return json.dumps(data)

    @classmethod
    def from_json(cls, json_str: str) -> "ConversationSession":
        """Create from JSON string."""
        data = json.loads(json_str)
        return cls(
            phone=data["phone"],
            history=data.get("history", []),
            stage=ConversationStage(data.get("stage", ConversationStage.IDLE.value)),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            last_invite_at=_parse_iso(data.get("last_invite_at")),
            last_list_at=_parse_iso(data.get("last_list_at")),
            offer_from_iso=data.get("offer_from_iso"),
            last_slots=[Slot.from_dict(item) for item in data.get("last_slots", [])],
        )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return json.loads(self.to_json())
