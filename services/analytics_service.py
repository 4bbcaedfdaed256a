"""Dashboard numbers, chat log search and CSV export for the admin area."""

import csv
import logging
from collections import OrderedDict
from datetime import datetime, timezone
from io import StringIO

from services.store import RecordStore, parse_timestamp

logger = logging.getLogger(__name__)

CHAT_LOG_LIMIT = 500
CHAT_LOG_SEARCH_COLUMNS = ('user_message', 'ai_response', 'user_email')
EXPORT_HEADERS = [
    'Date',
    'Time',
    'Email',
    'Session ID',
    'User Message',
    'AI Response',
    'Response Time (ms)',
    'Tokens Used',
]


def dashboard_summary(store: RecordStore, top_questions: int = 5) -> dict:
    """Compute the stat cards shown on the analytics tab.

    Unique users count distinct emails, falling back to the session id for
    anonymous chats.
    """
    chats = store.select('chat_analytics')
    questions = store.select('popular_questions', order='-frequency', limit=top_questions)

    users = {row.get('user_email') or row.get('session_id') for row in chats}
    sessions = {row.get('session_id') for row in chats}
    times = [row['response_time_ms'] for row in chats if row.get('response_time_ms') is not None]

    today = datetime.now(timezone.utc).date()
    chats_today = 0
    for row in chats:
        stamp = parse_timestamp(row.get('timestamp') or row.get('created_at'))
        if stamp is not None and stamp.astimezone(timezone.utc).date() == today:
            chats_today += 1

    return {
        'total_users': len(users),
        'avg_response_time': round(sum(times) / len(times)) if times else 0,
        'total_sessions': len(sessions),
        'today_chats': chats_today,
        'popular_questions': questions,
    }


def search_chat_logs(store: RecordStore, term: str = '') -> list:
    """Newest-first chat rows, optionally filtered by a case-insensitive substring."""
    return store.search(
        'chat_analytics',
        (term or '').strip(),
        CHAT_LOG_SEARCH_COLUMNS,
        order='-timestamp',
        limit=CHAT_LOG_LIMIT,
    )


def group_by_email(rows: list) -> 'OrderedDict[str, list]':
    grouped = OrderedDict()
    for row in rows:
        grouped.setdefault(row.get('user_email') or 'Anonymous', []).append(row)
    return grouped


def export_csv(rows: list) -> str:
    buffer = StringIO()
    writer = csv.writer(buffer)
    writer.writerow(EXPORT_HEADERS)
    for row in rows:
        stamp = parse_timestamp(row.get('timestamp'))
        writer.writerow([
            stamp.strftime('%Y-%m-%d') if stamp else '',
            stamp.strftime('%H:%M:%S') if stamp else '',
            row.get('user_email') or '',
            row.get('session_id') or '',
            row.get('user_message') or '',
            row.get('ai_response') or '',
            row.get('response_time_ms') if row.get('response_time_ms') is not None else '',
            row.get('tokens_used') if row.get('tokens_used') is not None else '',
        ])
    logger.info('Exported %s chat log rows', len(rows))
    return buffer.getvalue()
