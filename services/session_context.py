"""
Typed access to the values this site keeps in Flask's signed session cookie.

The cookie holds three independent things:
    * the admin login expiry (checked on every admin request),
    * the masterclass access grant (email, name, firm, expiry),
    * the chat widget's session id, so a reload keeps the same intake session.
"""

import random
import string
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from flask import session

from services.store import parse_timestamp

ADMIN_EXPIRES_KEY = 'admin_expires_at'
ACCESS_KEY = 'masterclass_access'
WIDGET_SESSION_KEY = 'chat_session_id'

_BASE36 = string.digits + string.ascii_lowercase


def new_widget_session_id() -> str:
    suffix = ''.join(random.choice(_BASE36) for _ in range(9))
    return f'session_{int(time.time() * 1000)}_{suffix}'


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SessionContext:
    def __init__(self, admin_hours: int = 24, access_hours: int = 48):
        self.admin_hours = admin_hours
        self.access_hours = access_hours

    @classmethod
    def from_config(cls, config) -> 'SessionContext':
        return cls(
            admin_hours=config.get('ADMIN_SESSION_HOURS', 24),
            access_hours=config.get('MASTERCLASS_ACCESS_HOURS', 48),
        )

    # ===== ADMIN =====

    def start_admin(self) -> None:
        session[ADMIN_EXPIRES_KEY] = (_now() + timedelta(hours=self.admin_hours)).isoformat()
        session.permanent = True

    def admin_active(self) -> bool:
        expires = parse_timestamp(session.get(ADMIN_EXPIRES_KEY))
        if expires is None:
            return False
        if expires <= _now():
            session.pop(ADMIN_EXPIRES_KEY, None)
            return False
        return True

    def end_admin(self) -> None:
        session.pop(ADMIN_EXPIRES_KEY, None)

    # ===== MASTERCLASS ACCESS =====

    def grant_access(self, email: str, name: str, firm_name: str = '') -> dict:
        grant = {
            'email': email,
            'name': name,
            'firm_name': firm_name,
            'expires_at': (_now() + timedelta(hours=self.access_hours)).isoformat(),
        }
        session[ACCESS_KEY] = grant
        return grant

    def access(self) -> Optional[dict]:
        """The current access grant, or None when missing or expired."""
        grant = session.get(ACCESS_KEY)
        if not grant:
            return None
        expires = parse_timestamp(grant.get('expires_at'))
        if expires is None or expires <= _now():
            session.pop(ACCESS_KEY, None)
            return None
        return grant

    # ===== CHAT WIDGET =====

    def widget_session_id(self, requested: Optional[str] = None) -> str:
        """Return the browser's chat session id, creating one on first use.

        A client-supplied id is adopted when the cookie has none yet.
        """
        current = session.get(WIDGET_SESSION_KEY)
        if current:
            return current
        current = requested or new_widget_session_id()
        session[WIDGET_SESSION_KEY] = current
        return current
