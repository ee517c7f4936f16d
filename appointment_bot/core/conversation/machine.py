"""
Conversation State Machine.

Handles one inbound patient message per call, under the phone's lock:

    shortcut -> history -> draft -> intent signals -> grounding decision
    -> (anchor -> availability -> second pass) -> side effects -> send

The second pass is what keeps offered times real: whenever the patient
wants to schedule or the draft starts listing times, the final reply is
regenerated from the actual slot list.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone, tzinfo
from functools import partial
from typing import Awaitable, Callable, Optional

from appointment_bot.config import get_settings
from appointment_bot.core.availability import (
    AvailabilityResolver,
    Slot,
    WorkingHoursTemplate,
    build_resolver,
    rank_by_proximity,
)
from appointment_bot.core.conversation.booking import (
    BookingService,
    CancellationResult,
    cancel_from_message,
)
from appointment_bot.core.conversation.datetime_parser import parse, parse_numeric
from appointment_bot.core.conversation.extractors import ExtractionInput
from appointment_bot.core.conversation.grounding import (
    MAX_OFFERED_SLOTS,
    NO_AVAILABILITY_MESSAGE,
    SLOT_MARKER,
    build_grounding_context,
    build_system_prompt,
    draft_signals_listing,
    find_cancellation,
    find_confirmation,
    strip_hedging,
)
from appointment_bot.core.conversation.intent import (
    IntentSignals,
    detect_signals,
    is_invite,
    is_reset,
    resolve_shortcut,
)
from appointment_bot.core.conversation.models import (
    ROLE_ASSISTANT,
    ROLE_PATIENT,
    ConversationSession,
)
from appointment_bot.core.conversation.state import ConversationStage, can_transition
from appointment_bot.core.conversation.store import ConversationStore, get_conversation_store
from appointment_bot.core.phone import mask_phone
from appointment_bot.infra.claude import APOLOGY_MESSAGE, ClaudeResponder
from appointment_bot.infra.google_calendar import get_calendar_client
from appointment_bot.infra.messaging import MessagingError, ZApiGateway, get_messaging_gateway

logger = logging.getLogger(__name__)

RESET_MESSAGE = "Done, I've cleared our conversation. How can I help you?"

# Availability window per offer
DAY_SPAN = 5
PER_DAY_CAP = 8
TOTAL_CAP = 20
PAGE_DAYS = 5


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass
class TurnResult:
    """What one inbound message produced."""

    reply: str
    stage: ConversationStage
    grounded: bool = False
    offered_slots: list[Slot] = field(default_factory=list)
    sent: bool = False
    message_id: Optional[str] = None


@dataclass
class GroundedReply:
    text: str
    offer: list[Slot]
    cursor: datetime


class ConversationStateMachine:
    """
    Per-message conversation driver.

    Side effects on the calendar (booking, cancellation) run as background
    tasks after the reply is decided; they have their own error handling
    and never delay or alter the reply.
    """

    def __init__(
        self,
        store: ConversationStore,
        resolver: AvailabilityResolver,
        responder: ClaudeResponder,
        gateway: ZApiGateway,
        booking: BookingService,
        canceller: Callable[[str], Awaitable[CancellationResult]],
        tz: tzinfo,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.resolver = resolver
        self.responder = responder
        self.gateway = gateway
        self.booking = booking
        self.canceller = canceller
        self.tz = tz
        self._clock = clock
        self._tasks: set[asyncio.Task] = set()

    # === Entry point ===

    async def handle_message(
        self,
        phone: str,
        text: str,
        sender_name: Optional[str] = None,
    ) -> TurnResult:
        """
        Process one inbound message and send the reply.

        Args:
            phone: Patient phone (session key and reply destination)
            text: Raw message text
            sender_name: Profile name reported by the gateway

        Returns:
            TurnResult describing the reply
        """
        async with self.store.session(phone) as session:
            if is_reset(text):
                await self.store.discard(phone)
                logger.info(f"Conversation reset by {mask_phone(phone)}")
                return await self._send(phone, RESET_MESSAGE, ConversationStage.IDLE)

            result = await self._turn(session, text, sender_name)
            sent = await self._send(phone, result.reply, result.stage)
            result.sent, result.message_id = sent.sent, sent.message_id
            return result

    async def drain(self) -> None:
        """Wait for pending side-effect tasks (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # === Turn ===

    async def _turn(
        self,
        session: ConversationSession,
        raw_text: str,
        sender_name: Optional[str],
    ) -> TurnResult:
        phone = session.phone
        now = self._clock()

        text = resolve_shortcut(raw_text, session.last_slots)
        if text != raw_text:
            logger.debug(f"Shortcut {raw_text!r} resolved to {text!r} for {mask_phone(phone)}")
        session.add_message(ROLE_PATIENT, text)

        draft = await self.responder.respond(session.render_context(), phone)

        signals = detect_signals(text, session, now, self.tz)
        wants_more = signals.more_dates and session.offer_from_iso is not None
        should_ground = (
            (signals.intent_schedule or wants_more) and not signals.too_soon
        ) or draft_signals_listing(draft)

        final = draft
        grounded = False
        offer: list[Slot] = []

        if should_ground:
            try:
                result = await self._ground(session, draft, text, signals, now)
            except Exception as e:
                logger.error(f"Grounding failed for {mask_phone(phone)}, using draft: {e}")
                result = None

            if result is not None:
                final, offer, grounded = result.text, result.offer, True
                session.last_slots = offer
                session.last_list_at = now
                session.offer_from_iso = result.cursor.isoformat()
                if offer:
                    self._transition(session, ConversationStage.AWAITING_SLOT_CHOICE)

        self._track_slot_choice(session, text)
        self._dispatch_side_effects(session, final, draft, sender_name)

        reply = strip_hedging(final) or strip_hedging(draft) or APOLOGY_MESSAGE
        if is_invite(reply):
            session.last_invite_at = now
        session.add_message(ROLE_ASSISTANT, reply)

        return TurnResult(
            reply=reply,
            stage=session.stage,
            grounded=grounded,
            offered_slots=offer,
        )

    async def _ground(
        self,
        session: ConversationSession,
        draft: str,
        patient_text: str,
        signals: IntentSignals,
        now: datetime,
    ) -> Optional[GroundedReply]:
        """
        Fetch real availability and regenerate the reply from it.

        Returns:
            GroundedReply, or None when the second pass failed (the draft is kept)
        """
        anchor = self._resolve_anchor(draft, patient_text, now)
        cursor = self._resolve_cursor(session, anchor, signals.more_dates, now)
        if signals.more_dates and session.offer_from is not None:
            anchor = None

        slots = await self.resolver.resolve(
            cursor,
            day_span=DAY_SPAN,
            per_day_cap=PER_DAY_CAP,
            total_cap=TOTAL_CAP,
        )
        if anchor is not None:
            slots = rank_by_proximity(slots, anchor)
        offer = slots[:MAX_OFFERED_SLOTS]

        logger.info(
            f"Offering {len(offer)} slot(s) to {mask_phone(session.phone)} "
            f"from {cursor.isoformat()} (anchor={anchor.isoformat() if anchor else None})"
        )

        if not offer:
            return GroundedReply(text=NO_AVAILABILITY_MESSAGE, offer=[], cursor=cursor)

        context = build_grounding_context(
            session.render_context(),
            draft.replace(SLOT_MARKER, "").strip(),
            offer,
            self.tz,
            anchor=anchor,
        )
        second = await self.responder.respond(context, session.phone)
        if not second or second == APOLOGY_MESSAGE:
            return None

        return GroundedReply(text=second, offer=offer, cursor=cursor)

    def _resolve_anchor(self, draft: str, patient_text: str, now: datetime) -> Optional[datetime]:
        """Future date/time named in the draft, else in the patient text."""
        for source in (draft, patient_text):
            parsed = parse(source.replace(SLOT_MARKER, ""), self.tz, now=now)
            if parsed.found and parsed.start > now:
                return parsed.start
        return None

    def _resolve_cursor(
        self,
        session: ConversationSession,
        anchor: Optional[datetime],
        more_dates: bool,
        now: datetime,
    ) -> datetime:
        """
        Pagination cursor for the next offer.

        "More dates" with a prior cursor pages 5 days on; otherwise an
        anchor restarts the search at the start of its local day;
        otherwise the search restarts now.
        """
        prior = session.offer_from
        if more_dates and prior is not None:
            return prior + timedelta(days=PAGE_DAYS)
        if anchor is not None:
            local_day = anchor.astimezone(self.tz).date()
            return datetime.combine(local_day, time.min, tzinfo=self.tz).astimezone(timezone.utc)
        return now

    def _track_slot_choice(self, session: ConversationSession, text: str) -> None:
        """Move to collecting details when the patient picked an offered slot."""
        if session.stage != ConversationStage.AWAITING_SLOT_CHOICE:
            return
        parsed = parse_numeric(text, self.tz, now=self._clock())
        if parsed.found and session.find_offered_slot(parsed.start) is not None:
            self._transition(session, ConversationStage.COLLECTING_DETAILS)

    def _transition(self, session: ConversationSession, stage: ConversationStage) -> None:
        if session.stage == stage and stage != ConversationStage.AWAITING_SLOT_CHOICE:
            return
        if not can_transition(session.stage, stage):
            logger.warning(
                f"Invalid transition for {mask_phone(session.phone)}: "
                f"{session.stage.value} -> {stage.value}"
            )
            return
        session.stage = stage

    # === Side effects ===

    def _dispatch_side_effects(
        self,
        session: ConversationSession,
        final: str,
        draft: str,
        sender_name: Optional[str],
    ) -> None:
        confirmed = find_confirmation(final) or find_confirmation(draft)
        if confirmed:
            self._transition(session, ConversationStage.CONFIRMED)
            extraction = ExtractionInput(
                texts=[final, draft]
                + [m["content"] for m in reversed(session.history) if m["role"] == ROLE_PATIENT],
                sender_phone=session.phone,
                sender_name=sender_name,
            )
            self._spawn(self.booking.book(confirmed, extraction), f"booking {confirmed}")

        if find_cancellation(final):
            self._transition(session, ConversationStage.IDLE)
            self._spawn(self.canceller(final), "cancellation")

    def _spawn(self, coro: Awaitable, label: str) -> None:
        task = asyncio.create_task(self._contained(coro, label))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _contained(self, coro: Awaitable, label: str) -> None:
        try:
            await coro
        except Exception as e:
            logger.error(f"Side effect '{label}' failed: {e}")

    # === Outbound ===

    async def _send(self, phone: str, reply: str, stage: ConversationStage) -> TurnResult:
        result = TurnResult(reply=reply, stage=stage)
        try:
            sent = await self.gateway.send_text(phone, reply)
        except MessagingError as e:
            logger.error(f"Reply to {mask_phone(phone)} not delivered: {e.detail()}")
            return result
        result.sent, result.message_id = True, sent.message_id
        return result


# Singleton
_machine: Optional[ConversationStateMachine] = None


def build_state_machine(store: Optional[ConversationStore] = None) -> ConversationStateMachine:
    """Wire the state machine from application settings."""
    settings = get_settings()
    calendar = get_calendar_client()
    resolver = build_resolver(calendar)
    template = WorkingHoursTemplate.from_config(settings.working_hours)

    responder = ClaudeResponder(
        system_prompt=build_system_prompt(
            assistant_name=settings.assistant_name,
            template=template,
            reasons=settings.visit_reasons,
            modalities=settings.modalities,
            location=settings.clinic_location,
            instructions=settings.assistant_instructions,
        )
    )
    booking = BookingService(
        calendar=calendar,
        resolver=resolver,
        tz=settings.tz,
        reasons=settings.visit_reasons,
        location=settings.clinic_location,
    )

    return ConversationStateMachine(
        store=store or get_conversation_store(),
        resolver=resolver,
        responder=responder,
        gateway=get_messaging_gateway(),
        booking=booking,
        canceller=partial(cancel_from_message, calendar=calendar, tz=settings.tz),
        tz=settings.tz,
    )


def get_state_machine() -> ConversationStateMachine:
    """Get singleton ConversationStateMachine."""
    global _machine
    if _machine is None:
        _machine = build_state_machine()
    return _machine


async def drain_state_machine() -> None:
    """Wait for side effects of the running machine, if one was built."""
    if _machine is not None:
        await _machine.drain()
