"""Completion round trips, chat transcript logging and question frequency tracking."""

from __future__ import annotations

import logging
from time import perf_counter

from services.completion_gateway import CompletionGateway
from services.errors import StoreError, ValidationError
from services.store import RecordStore, utc_now_iso

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = 'You are Ava, an AI assistant trained on the AI-First Masterclass for lawyers.'
ANONYMOUS_EMAIL = 'anonymous@example.com'


def build_system_prompt(store: RecordStore, knowledge_limit: int = 5) -> str:
    """Active instructions in priority order, followed by active knowledge base content.

    Store failures here are logged and the prompt falls back to what could be
    loaded; a missing knowledge base should not stop Ava from answering.
    """
    try:
        instructions = store.select('chatbot_instructions', filters={'is_active': True}, order='priority')
    except StoreError:
        logger.error('Error fetching chatbot instructions', exc_info=True)
        instructions = []

    try:
        knowledge = store.select('knowledge_base', filters={'status': 'active'}, limit=knowledge_limit)
    except StoreError:
        logger.error('Error fetching knowledge base', exc_info=True)
        knowledge = []

    system_prompt = '\n'.join(row['instruction_text'] for row in instructions) or DEFAULT_SYSTEM_PROMPT
    if knowledge:
        system_prompt += '\n\nRelevant knowledge base content:\n' + '\n\n'.join(row['content'] for row in knowledge)
    return system_prompt


def require_chat_fields(message, session_id) -> None:
    if not message or not session_id:
        raise ValidationError('Message and sessionId are required')


def answer_chat(store: RecordStore, gateway: CompletionGateway, message: str, session_id: str,
                user_email: str = None, *, knowledge_limit: int = 5) -> dict:
    """Send one user message upstream and log the exchange.

    Returns ``{'response': str, 'responseTime': int}`` where the response time
    is the completion round trip in milliseconds.
    """
    require_chat_fields(message, session_id)

    system_prompt = build_system_prompt(store, knowledge_limit)
    logger.info('System prompt length: %s', len(system_prompt))

    started = perf_counter()
    result = gateway.complete(system_prompt, message)
    response_time = int((perf_counter() - started) * 1000)

    try:
        store.insert('chat_analytics', {
            'session_id': session_id,
            'user_message': message,
            'ai_response': result.text,
            'response_time_ms': response_time,
            'tokens_used': result.tokens_used,
            'user_email': user_email or ANONYMOUS_EMAIL,
            'timestamp': utc_now_iso(),
            'created_at': utc_now_iso(),
        })
    except StoreError:
        # Don't fail the request if analytics fails
        logger.error('Error saving chat analytics for session %s', session_id, exc_info=True)

    return {'response': result.text, 'responseTime': response_time}


def track_question(store: RecordStore, question: str) -> str:
    """Bump the frequency counter for this exact question text.

    Matching is exact: no case folding, no whitespace trimming.
    Returns ``'updated'`` or ``'inserted'``.
    """
    if not question:
        raise ValidationError('Question is required')

    existing = store.first('popular_questions', {'question_text': question})
    if existing:
        store.update(
            'popular_questions',
            {'frequency': (existing.get('frequency') or 0) + 1, 'last_asked': utc_now_iso()},
            {'id': existing['id']},
        )
        return 'updated'

    store.insert('popular_questions', {
        'question_text': question,
        'frequency': 1,
        'category': 'general',
        'last_asked': utc_now_iso(),
    })
    return 'inserted'
