"""
Intent signals from raw patient text.

Cheap keyword/regex detection; the generative responder does the rest.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from typing import Optional, Sequence

from appointment_bot.core.availability.types import Slot
from appointment_bot.core.conversation.datetime_parser import parse
from appointment_bot.core.conversation.models import ConversationSession

# An affirmation only counts as booking intent this soon after an invite
INVITE_WINDOW = timedelta(minutes=5)

# Slots shown this recently are not shown again
LIST_COOLDOWN = timedelta(seconds=60)

SCHEDULING_KEYWORDS = re.compile(
    r"\b(book|booking|schedule|scheduling|reschedule|appointment|appointments|"
    r"consultation|consult|availability|available|openings?|slots?|vacanc(?:y|ies)|"
    r"free time|see the doctor|when can)\b",
    re.IGNORECASE,
)

AFFIRMATION = re.compile(
    r"^\s*(yes|yeah|yep|yup|sure|ok|okay|please|of course|definitely|go ahead|"
    r"sounds good|let'?s do it|i do|i would|i'd like that|yes please|ok please)"
    r"[\s.!,]*$",
    re.IGNORECASE,
)

MORE_DATES = re.compile(
    r"\b(more|other|another|different|later|further|next)\s+"
    r"(dates?|days?|times?|options?|slots?|week)\b|\banything else\b",
    re.IGNORECASE,
)

RESET_PHRASE = re.compile(r"^\s*/?(reset|restart|start over)\s*[.!]?\s*$", re.IGNORECASE)

# Assistant phrases that invite the patient to book
INVITE_PHRASES = re.compile(
    r"(would you like to (schedule|book)|shall i (show|check)|"
    r"want (me )?to (schedule|book|see)|see (the )?available times)",
    re.IGNORECASE,
)

_SHORTCUT = re.compile(
    r"^\s*(?:option|opt|number|no\.?|#)?\s*(\d{1,2})\s*[.)!]?\s*$",
    re.IGNORECASE,
)


def resolve_shortcut(text: str, last_slots: Sequence[Slot]) -> str:
    """
    Rewrite a numeric choice ("3", "option 3") into an explicit statement.

    "3" with a three-slot offer becomes "I choose 03/09/25 10:00". Out of
    range or unrelated text is returned unchanged.
    """
    match = _SHORTCUT.match(text or "")
    if not match or not last_slots:
        return text

    index = int(match.group(1)) - 1
    if 0 <= index < len(last_slots):
        return f"I choose {last_slots[index].display_label}"
    return text


def is_reset(text: str) -> bool:
    return bool(RESET_PHRASE.match(text or ""))


def is_invite(reply: str) -> bool:
    """Whether an assistant reply invites the patient to book."""
    return bool(INVITE_PHRASES.search(reply or ""))


@dataclass(frozen=True)
class IntentSignals:
    """What a patient message says about scheduling."""

    keyword: bool = False
    explicit_datetime: bool = False
    affirmation: bool = False
    more_dates: bool = False
    invite_recent: bool = False
    too_soon: bool = False
    anchor: Optional[datetime] = None

    @property
    def intent_schedule(self) -> bool:
        return (
            self.keyword
            or self.explicit_datetime
            or (self.affirmation and self.invite_recent)
        )


def detect_signals(
    text: str,
    session: ConversationSession,
    now: datetime,
    tz: tzinfo,
) -> IntentSignals:
    """Extract intent signals from a (shortcut-resolved) patient message."""
    parsed = parse(text, tz, now=now)

    invite_recent = (
        session.last_invite_at is not None
        and now - session.last_invite_at <= INVITE_WINDOW
    )
    too_soon = (
        session.last_list_at is not None
        and now - session.last_list_at < LIST_COOLDOWN
    )

    return IntentSignals(
        keyword=bool(SCHEDULING_KEYWORDS.search(text or "")),
        explicit_datetime=parsed.found,
        affirmation=bool(AFFIRMATION.match(text or "")),
        more_dates=bool(MORE_DATES.search(text or "")),
        invite_recent=invite_recent,
        too_soon=too_soon,
        anchor=parsed.start if parsed.found else None,
    )
