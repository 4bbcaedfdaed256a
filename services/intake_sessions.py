"""Persistence for intake flow state, keyed by the widget session id."""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from services.intake_flow import COMPLETE, FLOW_ORDER, IntakeState
from services.store import RecordStore, parse_timestamp, utc_now_iso

logger = logging.getLogger(__name__)

TABLE = 'chat_sessions'


def _decode_contact(value) -> dict:
    if not value:
        return {}
    if isinstance(value, dict):
        return dict(value)
    try:
        decoded = json.loads(value)
    except (TypeError, ValueError):
        logger.warning('Discarding unreadable contact data: %r', value)
        return {}
    return decoded if isinstance(decoded, dict) else {}


def state_from_row(row: dict) -> IntakeState:
    step = row.get('step') or FLOW_ORDER[0]
    if step not in FLOW_ORDER and step != COMPLETE:
        step = FLOW_ORDER[0]
    return IntakeState(
        session_id=row['session_id'],
        source=row.get('source') or 'web',
        user_turns=int(row.get('user_turns') or 0),
        collecting=bool(row.get('collecting')),
        step=step,
        contact={k: v for k, v in _decode_contact(row.get('contact')).items() if k in FLOW_ORDER and v},
        flushed=bool(row.get('flushed')),
        reporting_email=row.get('reporting_email'),
    )


def state_to_row(state: IntakeState) -> dict:
    return {
        'source': state.source,
        'user_turns': state.user_turns,
        'collecting': state.collecting,
        'step': state.step,
        'contact': json.dumps(state.contact),
        'flushed': state.flushed,
        'reporting_email': state.reporting_email,
        'updated_at': utc_now_iso(),
    }


class IntakeSessionRepository:
    """Loads and saves IntakeState rows; rows idle longer than the TTL are discarded."""

    def __init__(self, store: RecordStore, ttl_hours: int = 12):
        self.store = store
        self.ttl = timedelta(hours=ttl_hours)

    def _expired(self, row: dict, now: datetime) -> bool:
        updated = parse_timestamp(row.get('updated_at') or row.get('created_at'))
        return updated is not None and now - updated > self.ttl

    def load(self, session_id: str) -> Optional[IntakeState]:
        row = self.store.first(TABLE, {'session_id': session_id})
        if row is None:
            return None
        if self._expired(row, datetime.now(timezone.utc)):
            logger.info('Intake session %s expired; starting fresh', session_id)
            self.store.delete(TABLE, {'session_id': session_id})
            return None
        return state_from_row(row)

    def load_or_create(self, session_id: str, source: str, reporting_email: Optional[str] = None) -> IntakeState:
        state = self.load(session_id)
        if state is None:
            state = IntakeState(session_id=session_id, source=source, reporting_email=reporting_email)
        elif reporting_email and not state.reporting_email:
            state.reporting_email = reporting_email
        return state

    def save(self, state: IntakeState) -> None:
        self.store.upsert(TABLE, {'session_id': state.session_id}, state_to_row(state))

    def claim_flush(self, state: IntakeState) -> bool:
        """Set ``flushed`` only where it is still unset; True for the one caller that flips it.

        Concurrent turns of the same session each load ``flushed=False``; the
        conditional update lets exactly one of them send the contact record.
        """
        claimed = self.store.update(
            TABLE,
            {'flushed': True, 'updated_at': utc_now_iso()},
            {'session_id': state.session_id, 'flushed': False},
        )
        if claimed:
            return True
        if self.store.first(TABLE, {'session_id': state.session_id}) is None:
            # Never saved yet, so no other request can have flushed it
            row = state_to_row(state)
            row.update(session_id=state.session_id, flushed=True)
            self.store.insert(TABLE, row)
            return True
        return False

    def purge_expired(self) -> int:
        now = datetime.now(timezone.utc)
        removed = 0
        for row in self.store.select(TABLE):
            if self._expired(row, now):
                removed += self.store.delete(TABLE, {'session_id': row['session_id']})
        return removed
