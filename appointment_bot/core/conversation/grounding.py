"""
Reply grounding.

The responder writes a draft first. When the patient wants to schedule
(or the draft starts listing times on its own), a second pass is run
with the real slot list so the final reply can only offer times that
exist. This module holds the prompts, the fixed texts and the phrase
detectors for both passes.
"""

import json
import re
from datetime import datetime, tzinfo
from typing import Optional, Sequence

from appointment_bot.core.availability.types import (
    TEMPLATE_DAY_NAMES,
    Slot,
    WorkingHoursTemplate,
)

# The responder may emit this to ask for the slot list
SLOT_MARKER = "[[SHOW_SLOTS]]"

MAX_OFFERED_SLOTS = 6

NO_AVAILABILITY_MESSAGE = (
    "I'm sorry, there are no available times in the next few days. "
    'Reply "more dates" to see the following days, or tell me a date that suits you.'
)

# "All set! Your appointment is booked for 03/09/25 at 08:00."
CONFIRMATION_PATTERN = re.compile(
    r"all set!\s*your appointment(?: with [^.!\n]+?)? is booked for "
    r"(?P<date>\d{1,2}/\d{1,2}/\d{2,4}) at (?P<time>\d{1,2}:\d{2})",
    re.IGNORECASE,
)

# "Your appointment on 03/09/25 at 08:00 has been cancelled."
CANCELLATION_PATTERN = re.compile(
    r"your appointment (?:on|for) (?P<date>\d{1,2}/\d{1,2}/\d{2,4}) at "
    r"(?P<time>\d{1,2}:\d{2}) (?:has been|was|is) cancell?ed",
    re.IGNORECASE,
)

# Filler the model writes when it thinks it has to go and look something up
HEDGING_PATTERNS = [
    re.compile(r"[^.!?\n]*\b(let me|i'?ll|i will|allow me to) (just )?(check|look|verify|consult)[^.!?\n]*[.!?]?", re.I),
    re.compile(r"[^.!?\n]*\b(one moment|just a moment|a moment please|hold on|please wait)[^.!?\n]*[.!?]?", re.I),
    re.compile(r"[^.!?\n]*\b(get back to you|checking (the )?(calendar|schedule|agenda))[^.!?\n]*[.!?]?", re.I),
]

_TIME_TOKEN = re.compile(r"\b\d{1,2}(?::\d{2}|\s?(?:am|pm))\b", re.I)
_LISTING_PHRASES = re.compile(
    r"\b(available (times|slots|dates)|here are (the |some )?(options|times|slots)|"
    r"i have (these|the following) (times|slots|options)|free (times|slots))\b",
    re.I,
)


def draft_signals_listing(draft: str) -> bool:
    """Whether a draft is offering times or asks for the slot list."""
    if not draft:
        return False
    if SLOT_MARKER in draft:
        return True
    if _LISTING_PHRASES.search(draft):
        return True
    return len(_TIME_TOKEN.findall(draft)) >= 2


def strip_hedging(text: str) -> str:
    """Remove the internal marker and "let me check" filler."""
    cleaned = (text or "").replace(SLOT_MARKER, "")
    for pattern in HEDGING_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    cleaned = re.sub(r"[ \t]{2,}", " ", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def find_confirmation(text: str) -> Optional[str]:
    """The "dd/mm/yy HH:MM" a confirmation phrase refers to, if any."""
    match = CONFIRMATION_PATTERN.search(text or "")
    return f"{match.group('date')} {match.group('time')}" if match else None


def find_cancellation(text: str) -> Optional[str]:
    match = CANCELLATION_PATTERN.search(text or "")
    return f"{match.group('date')} {match.group('time')}" if match else None


def describe_working_hours(template: WorkingHoursTemplate) -> str:
    """One line per open weekday, e.g. "Mon: 08:00-12:00, 14:00-18:00"."""
    lines = []
    # Monday first, Sunday last
    for weekday in sorted(template.open_weekdays, key=lambda d: (d + 6) % 7):
        ranges = ", ".join(
            f"{opens.strftime('%H:%M')}-{closes.strftime('%H:%M')}"
            for opens, closes in template.for_weekday(weekday)
        )
        lines.append(f"{TEMPLATE_DAY_NAMES[weekday]}: {ranges}")
    return "\n".join(lines) or "No working hours configured."


def build_system_prompt(
    assistant_name: str,
    template: WorkingHoursTemplate,
    reasons: Sequence[str],
    modalities: Sequence[str],
    location: str = "",
    instructions: str = "",
) -> str:
    """System prompt shared by the draft and the grounded pass."""
    if instructions:
        return instructions

    reason_options = " or ".join(f'"{r}"' for r in reasons)
    modality_options = " or ".join(f'"{m}"' for m in modalities)
    location_line = f"Clinic location: {location}\n" if location else ""

    return f"""You are {assistant_name}, the scheduling assistant of a medical clinic, chatting with patients over WhatsApp.

Write short, warm, plain-text messages. Dates are always day-first (dd/mm/yy) and times are 24-hour (HH:MM).

Working hours (days not listed are closed):
{describe_working_hours(template)}
{location_line}
Rules:
- Never invent dates or times. When the patient wants to schedule or asks for times, write {SLOT_MARKER} and the system will give you the real free times.
- Visit reasons are only {reason_options}. Modalities are only {modality_options}.
- Only after the patient picks a time, collect: full name, age, phone, reason for the visit and modality.
- When every detail is collected, confirm with exactly: "All set! Your appointment is booked for dd/mm/yy at HH:MM."
- When the patient cancels a known appointment, reply with exactly: "Your appointment on dd/mm/yy at HH:MM has been cancelled."
- Do not say you will check the calendar or get back later."""


def build_grounding_context(
    transcript: str,
    draft: str,
    slots: Sequence[Slot],
    tz: tzinfo,
    anchor: Optional[datetime] = None,
) -> str:
    """
    Second-pass context: transcript, the draft, the real slots and directives.

    The slot list is JSON so the model copies labels instead of
    paraphrasing them.
    """
    slot_list = json.dumps(
        [
            {
                "option": index,
                "day": slot.day_label,
                "label": slot.display_label,
                "start": slot.start.astimezone(tz).isoformat(),
            }
            for index, slot in enumerate(slots, start=1)
        ],
        ensure_ascii=False,
    )
    anchor_line = (
        f"The patient asked about {anchor.astimezone(tz).strftime('%d/%m/%y %H:%M')}; "
        "the list is ordered nearest to that first.\n"
        if anchor
        else ""
    )

    return f"""{transcript}

[Draft reply]
{draft}

[Available slots - the only times that exist]
{slot_list}
{anchor_line}
Rewrite the draft as the final reply, following these directives:
1. Offer only times from the list above. Never invent or adjust a time.
2. Offer at most {MAX_OFFERED_SLOTS} options, nearest first, numbered so the patient can answer with the option number.
3. If the list is empty, reply exactly: "{NO_AVAILABILITY_MESSAGE}"
4. Do not ask for name, age, phone, reason or modality until the patient has chosen a time.
5. Never mention a closed weekday unless it appears in the list.
6. Do not end with a generic question such as "How can I help?" when a list was offered.
7. Do not write {SLOT_MARKER}."""
