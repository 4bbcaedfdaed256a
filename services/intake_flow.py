"""
Conversational intake flow for the Ava chat widget.

After each user message the flow decides whether to answer through the
completion gateway, store the message as the answer to a pending contact
question, or start asking for contact details. States:

    Idle -> AwaitingAnswer(full_name) -> AwaitingAnswer(email) -> ...
         -> AwaitingAnswer(practice_type) -> Complete

Collection starts only for visitors carrying the traffic-source marker,
after a minimum number of user turns, while at least one field is missing
and no collection is already running. The opening question is appended
after the in-flight assistant reply. Once every field is present the record
is flushed exactly once.

Usage:
    flow = IntakeFlow(state, responder=reply_fn, tracker=track_fn,
                      notifier=notify_fn, flusher=flush_fn)
    result = flow.handle_message("How do digital teammates work?")
    for message in result.messages:
        ...
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from services.errors import UpstreamError, ValidationError
from services.lead_service import CONTACT_FIELDS, contact_payload
from services.side_effects import best_effort

logger = logging.getLogger(__name__)

FLOW_ORDER = CONTACT_FIELDS
COMPLETE = 'complete'

PROMPTS = {
    'full_name': "By the way, I'd love to personalize our conversation. What's your name?",
    'email': "Great! And what's the best email to reach you at?",
    'phone': 'Perfect. Mind sharing your phone number?',
    'law_firm_name': "What's the name of your law firm?",
    'practice_type': 'What is your practice type?',
}
THANK_YOU = 'Perfect! Thanks for that. Now, what would you like to know about the masterclass?'
FALLBACK_REPLY = 'Sorry, I encountered an error. Please try again.'
TURN_NOTICE_TRIGGER = '5_questions_completed'

GREETING = (
    "Hi! I'm Ava, your AI assistant trained on My Legal Academy's 'Practical AI for Law Firms: "
    "Lead to Retainer' workshop. Ask me anything about AI-powered intake systems, digital "
    "teammates, and the 11-stage blueprint!"
)

STARTER_QUESTIONS = {
    'How do digital teammates respond to leads within 37 seconds?': (
        "Digital teammates are AI-powered systems that instantly capture leads and make contact "
        "within 37 seconds. They use voice AI (like 'Joe' demonstrated in the workshop) or chatbot "
        "systems to call new leads automatically, qualify them with custom questions, and schedule "
        "appointments on your calendar. This speed is critical because Harvard Business Review "
        "research shows you lose 80% of leads if you wait even 1 minute to respond!"
    ),
    'What is the 11-stage intake blueprint that converts leads to retainers?': (
        'The 11-stage blueprint covers: 1) Lead Capture, 2) Initial Contact (37 seconds), 3) Lead '
        'Qualification, 4) Appointment Scheduling, 5) Appointment Confirmation, 6) Document '
        'Collection, 7) Pre-Consultation Preparation, 8) Human Consultation, 9) Follow-up & '
        'Nurture, 10) Retainer Preparation & Signing, 11) Case Management Integration. This system '
        'ensures no lead falls through the cracks and maximizes conversion rates.'
    ),
    'How can AI help my law firm capture and qualify leads automatically?': (
        'AI systems work 24/7 across all channels - your website, Instagram, WhatsApp, Facebook '
        'Messenger. They automatically qualify prospects using custom questions specific to your '
        'practice area (PI, immigration, estate planning, etc.), collect documents before '
        'appointments, and prepare human staff with case summaries. This works for any practice '
        'area and integrates with existing CRMs like Lawmatics, HubSpot, or Legal Funnel.'
    ),
}


def _message_id(prefix: str) -> str:
    return f'{prefix}_{uuid.uuid4().hex[:12]}'


@dataclass
class Message:
    """One transcript entry."""

    role: str
    content: str
    id: str = field(default_factory=lambda: _message_id('msg'))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'role': self.role,
            'content': self.content,
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass
class IntakeState:
    """Everything the flow remembers about one visitor session."""

    session_id: str
    source: str = 'web'
    user_turns: int = 0
    collecting: bool = False
    step: str = FLOW_ORDER[0]
    contact: Dict[str, str] = field(default_factory=dict)
    flushed: bool = False
    reporting_email: Optional[str] = None

    def missing_fields(self) -> List[str]:
        return [name for name in FLOW_ORDER if not self.contact.get(name)]

    def collection_snapshot(self) -> Dict[str, Any]:
        """The parts of the state a failed completion call must leave untouched."""
        return {
            'collecting': self.collecting,
            'step': self.step,
            'contact': dict(self.contact),
            'flushed': self.flushed,
        }


@dataclass
class FlowSettings:
    source_marker: str = 'fb'
    min_turns: int = 3
    notify_turn: int = 5


@dataclass
class TurnResult:
    messages: List[Message]
    show_starter_questions: bool = False
    show_cta: bool = False
    collecting: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'messages': [message.to_dict() for message in self.messages],
            'show_starter_questions': self.show_starter_questions,
            'show_cta': self.show_cta,
            'collecting': self.collecting,
        }


class IntakeFlow:
    """
    Drives one session's state through a single user turn at a time.

    Collaborators:
        responder(message, user_email) -> str   completion round trip; raises UpstreamError
        tracker(text)                           question-frequency counter
        notifier(body)                          turn-threshold webhook
        flusher(contact, source)                one-time webhook + profile upsert
        claimer() -> bool                       durably marks the session flushed; False when
                                                another request already did

    tracker, notifier and flusher run best-effort; their failures are logged
    and never change the transcript.
    """

    def __init__(
        self,
        state: IntakeState,
        *,
        responder: Callable[[str, Optional[str]], str],
        tracker: Optional[Callable[[str], Any]] = None,
        notifier: Optional[Callable[[dict], Any]] = None,
        flusher: Optional[Callable[[dict, str], Any]] = None,
        claimer: Optional[Callable[[], bool]] = None,
        settings: Optional[FlowSettings] = None,
    ):
        self.state = state
        self.settings = settings or FlowSettings()
        self._responder = responder
        self._tracker = tracker
        self._notifier = notifier
        self._flusher = flusher
        self._claimer = claimer
        self.step_history: List[str] = []

    @property
    def has_source_marker(self) -> bool:
        return self.state.source == self.settings.source_marker

    # ===== ENTRY POINTS =====

    def handle_message(self, text: str) -> TurnResult:
        if not text or not text.strip():
            raise ValidationError('Message is required')

        self._track(text)
        messages = [Message('user', text)]

        if self.state.collecting:
            messages.extend(self._answer(text))
            return self._result(messages, show_starters=self.state.step == COMPLETE)

        self.state.user_turns += 1
        try:
            reply = self._responder(text, self.state.reporting_email)
        except UpstreamError as exc:
            logger.error('Chat error for session %s: %s', self.state.session_id, exc)
            messages.append(Message('assistant', FALLBACK_REPLY))
            # The turn still counts when its completion call fails
            self._notify_turn_threshold()
            return self._result(messages)

        messages.append(Message('assistant', reply))
        self._notify_turn_threshold()
        messages.extend(self._maybe_start_collection())
        return self._result(messages)

    def handle_starter_question(self, question: str) -> TurnResult:
        """Answer one of the fixed starter questions without calling the completion gateway."""
        if self.state.collecting:
            return self.handle_message(question)
        answer = STARTER_QUESTIONS.get(question)
        if answer is None:
            raise ValidationError('Unknown starter question')

        self._track(question)
        self.state.user_turns += 1
        messages = [Message('user', question), Message('assistant', answer)]
        self._notify_turn_threshold()
        messages.extend(self._maybe_start_collection())
        return self._result(messages)

    # ===== COLLECTION =====

    def trigger_condition(self) -> bool:
        state = self.state
        return (
            self.has_source_marker
            and state.user_turns >= self.settings.min_turns
            and bool(state.missing_fields())
            and not state.collecting
        )

    def _maybe_start_collection(self) -> List[Message]:
        if not self.trigger_condition():
            return []
        first_missing = self.state.missing_fields()[0]
        self.state.collecting = True
        self._enter(first_missing)
        logger.info('Starting contact collection for session %s at %s', self.state.session_id, first_missing)
        return [Message('assistant', PROMPTS[first_missing], id=_message_id('info_collection'))]

    def _answer(self, text: str) -> List[Message]:
        state = self.state
        current = state.step
        if not state.contact.get(current):
            state.contact[current] = text
        if current == 'email':
            state.reporting_email = state.contact['email']

        missing = state.missing_fields()
        if missing:
            self._enter(missing[0])
            return [Message('assistant', PROMPTS[missing[0]], id=_message_id(f'info_{missing[0]}'))]

        state.collecting = False
        self._enter(COMPLETE)
        self._flush()
        return [Message('assistant', THANK_YOU, id=_message_id('info_complete'))]

    def _enter(self, step: str) -> None:
        self.state.step = step
        self.step_history.append(step)

    def _flush(self) -> None:
        state = self.state
        if state.flushed or state.missing_fields():
            return
        state.flushed = True
        if self._claimer is not None and not self._claimer():
            logger.info('Contact record for session %s was already flushed', state.session_id)
            return
        logger.info('Flushing completed contact record for session %s', state.session_id)
        if self._flusher is not None:
            best_effort('contact flush', self._flusher, dict(state.contact), self.settings.source_marker)

    # ===== SIDE CHANNELS =====

    def _track(self, text: str) -> None:
        if self._tracker is not None:
            best_effort('question tracking', self._tracker, text)

    def _notify_turn_threshold(self) -> None:
        if self.state.user_turns != self.settings.notify_turn or self._notifier is None:
            return
        body = contact_payload(
            self.state.contact,
            source=self.settings.source_marker if self.has_source_marker else 'web',
            trigger=TURN_NOTICE_TRIGGER,
            fallback_email=self.state.reporting_email,
        )
        best_effort('turn notification', self._notifier, body)

    def _result(self, messages: List[Message], *, show_starters: bool = False) -> TurnResult:
        turns = self.state.user_turns
        return TurnResult(
            messages=messages,
            show_starter_questions=show_starters,
            show_cta=turns > 0 and turns % 2 == 0,
            collecting=self.state.collecting,
        )
