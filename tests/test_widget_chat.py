import copy
import os
import tempfile

import pytest

os.environ.setdefault('SECRET_KEY', 'test-secret')

from app import app, init_db
from services.completion_gateway import CompletionGateway, CompletionResult
from services.errors import CompletionError, StoreError
from services.intake_flow import FALLBACK_REPLY, PROMPTS, STARTER_QUESTIONS, THANK_YOU
from services.intake_sessions import IntakeSessionRepository
from services.store import SqliteRecordStore

SESSION_ID = 'session_1700000000000_k3j9x2m1q'
QUESTIONS = ['What is the masterclass?', 'Who teaches it?', 'How long is the replay?']
ANSWERS = ['Jane Doe', 'jane@firm.com', '555-000-1111', 'Doe & Partners', 'Family Law']


@pytest.fixture
def client():
    db_fd, db_path = tempfile.mkstemp()
    app.config.update(
        DATABASE_PATH=db_path,
        STORE_BACKEND='sqlite',
        TESTING=True,
        WTF_CSRF_ENABLED=False,
        SESSION_COOKIE_SECURE=False,
        OPENROUTER_API_KEY='test-key',
        FORM_WEBHOOK_URL='https://hooks.example.com/form',
        INTAKE_SOURCE_MARKER='fb',
        INTAKE_MIN_TURNS=3,
        INTAKE_NOTIFY_TURN=5,
    )
    with app.app_context():
        init_db()
    with app.test_client() as c:
        yield c
    os.close(db_fd)
    os.unlink(db_path)


@pytest.fixture
def store():
    return SqliteRecordStore(app.config['DATABASE_PATH'])


@pytest.fixture
def completions(monkeypatch):
    calls = []

    def fake_complete(self, system_prompt, message):
        calls.append(message)
        return CompletionResult(text=f'Answer: {message}', tokens_used=10)

    monkeypatch.setattr(CompletionGateway, 'complete', fake_complete)
    return calls


@pytest.fixture
def webhooks(monkeypatch):
    calls = []

    class Ok:
        status_code = 200
        ok = True
        text = '{}'

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append((url, json))
        return Ok()

    monkeypatch.setattr('services.lead_service.requests.post', fake_post)
    return calls


def say(client, text, source='fb', session_id=SESSION_ID):
    resp = client.post('/api/chat', json={'message': text, 'sessionId': session_id, 'source': source})
    assert resp.status_code == 200, resp.data
    return resp.get_json()


def test_third_reply_is_followed_by_name_prompt(client, completions, webhooks):
    first = say(client, QUESTIONS[0])
    say(client, QUESTIONS[1])
    third = say(client, QUESTIONS[2])

    assert first['sessionId'] == SESSION_ID
    assert [m['role'] for m in third['messages']] == ['user', 'assistant', 'assistant']
    assert third['messages'][1]['content'] == 'Answer: How long is the replay?'
    assert third['messages'][2]['content'] == PROMPTS['full_name']
    assert third['collecting'] is True


def test_collection_survives_reload(client, completions, webhooks):
    for question in QUESTIONS:
        say(client, question)

    reloaded = app.test_client()
    after_name = say(reloaded, 'Jane Doe')
    after_email = say(reloaded, 'jane@firm.com')

    assert after_name['messages'][-1]['content'] == PROMPTS['email']
    assert after_email['messages'][-1]['content'] == PROMPTS['phone']
    assert completions == QUESTIONS


def test_completed_collection_creates_profile_and_posts_webhook(client, store, completions, webhooks):
    for question in QUESTIONS:
        say(client, question)
    results = [say(client, answer) for answer in ANSWERS]

    assert results[-1]['messages'][-1]['content'] == THANK_YOU
    assert results[-1]['show_starter_questions'] is True

    profiles = store.select('profiles')
    assert len(profiles) == 1
    profile = profiles[0]
    assert profile['name'] == 'Jane Doe'
    assert profile['email'] == 'jane@firm.com'
    assert profile['phone'] == '555-000-1111'
    assert profile['law_firm_name'] == 'Doe & Partners'
    assert profile['practice_type'] == 'Family Law'
    assert profile['source'] == 'fb'

    assert webhooks == [('https://hooks.example.com/form', {
        'full_name': 'Jane Doe',
        'email': 'jane@firm.com',
        'phone': '555-000-1111',
        'law_firm_name': 'Doe & Partners',
        'practice_type': 'Family Law',
        'source': 'fb',
    })]

    # Later turns never flush again
    say(client, 'Anything else?')
    say(client, 'What about the pilot?')
    assert len(store.select('profiles')) == 1
    assert len([call for call in webhooks if 'trigger' not in call[1]]) == 1


def test_fifth_turn_notification_for_regular_traffic(client, completions, webhooks):
    for index in range(6):
        say(client, f'question {index}', source='')

    assert len(webhooks) == 1
    assert webhooks[0][1]['trigger'] == '5_questions_completed'
    assert webhooks[0][1]['source'] == 'web'


def test_completion_failure_returns_single_fallback(client, store, monkeypatch, webhooks):
    def failing_complete(self, system_prompt, message):
        raise CompletionError('Completion API request failed', upstream_status=500)

    monkeypatch.setattr(CompletionGateway, 'complete', failing_complete)
    data = say(client, 'Hello?')

    assert [m['content'] for m in data['messages']] == ['Hello?', FALLBACK_REPLY]
    session_row = store.first('chat_sessions', {'session_id': SESSION_ID})
    assert session_row['user_turns'] == 1
    assert session_row['collecting'] is False


def test_starter_question_answered_without_completion(client, store, completions, webhooks):
    question, answer = next(iter(STARTER_QUESTIONS.items()))
    resp = client.post('/api/chat', json={'starter_question': question, 'sessionId': SESSION_ID})
    data = resp.get_json()

    assert resp.status_code == 200
    assert data['messages'][1]['content'] == answer
    assert completions == []
    assert store.first('popular_questions', {'question_text': question})['frequency'] == 1


def test_messages_are_tracked_and_session_saved(client, store, completions, webhooks):
    say(client, 'What is the masterclass?')
    say(client, 'What is the masterclass?')

    assert store.first('popular_questions', {'question_text': 'What is the masterclass?'})['frequency'] == 2
    session_row = store.first('chat_sessions', {'session_id': SESSION_ID})
    assert session_row['user_turns'] == 2
    assert session_row['source'] == 'fb'


def test_cta_flag_on_even_turns(client, completions, webhooks):
    flags = [say(client, f'q{index}', source='')['show_cta'] for index in range(4)]
    assert flags == [False, True, False, True]


def test_empty_message_rejected(client, completions):
    resp = client.post('/api/chat', json={'message': '  ', 'sessionId': SESSION_ID})
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'Message is required'


def test_widget_session_id_assigned_when_missing(client, completions, webhooks):
    resp = client.post('/api/chat', json={'message': 'Hi'})
    data = resp.get_json()

    assert resp.status_code == 200
    assert data['sessionId'].startswith('session_')

    again = client.post('/api/chat', json={'message': 'Hi again'}).get_json()
    assert again['sessionId'] == data['sessionId']


def contact_webhooks(webhooks):
    return [body for _, body in webhooks if 'trigger' not in body]


def test_overlapping_final_answers_flush_once(client, store, completions, webhooks, monkeypatch):
    for question in QUESTIONS:
        say(client, question)
    for answer in ANSWERS[:-1]:
        say(client, answer)

    # Both requests load the session before either has saved it
    stale = IntakeSessionRepository(store).load(SESSION_ID)
    say(client, ANSWERS[-1])
    monkeypatch.setattr(IntakeSessionRepository, 'load', lambda self, session_id: copy.deepcopy(stale))
    second = say(client, ANSWERS[-1])

    assert second['messages'][-1]['content'] == THANK_YOU
    assert len(contact_webhooks(webhooks)) == 1
    assert len(store.select('profiles')) == 1
    assert store.first('chat_sessions', {'session_id': SESSION_ID})['flushed'] is True


def test_flush_not_repeated_when_session_save_fails(client, store, completions, webhooks, monkeypatch):
    for question in QUESTIONS:
        say(client, question)
    for answer in ANSWERS[:-1]:
        say(client, answer)

    original_save = IntakeSessionRepository.save
    failures = []

    def save_failing_once(self, state):
        if not failures:
            failures.append(state.session_id)
            raise StoreError('Record store query failed')
        return original_save(self, state)

    monkeypatch.setattr(IntakeSessionRepository, 'save', save_failing_once)
    failed = client.post('/api/chat', json={'message': ANSWERS[-1], 'sessionId': SESSION_ID, 'source': 'fb'})
    assert failed.status_code == 500

    retried = say(client, ANSWERS[-1])
    assert retried['messages'][-1]['content'] == THANK_YOU
    assert len(contact_webhooks(webhooks)) == 1


def test_collection_answers_do_not_need_completion_key(client, store, completions, webhooks, monkeypatch):
    for question in QUESTIONS:
        say(client, question)
    monkeypatch.setitem(app.config, 'OPENROUTER_API_KEY', None)

    results = [say(client, answer) for answer in ANSWERS]

    assert results[0]['messages'][-1]['content'] == PROMPTS['email']
    assert results[-1]['messages'][-1]['content'] == THANK_YOU
    assert len(contact_webhooks(webhooks)) == 1
    assert len(store.select('profiles')) == 1


def test_starter_question_does_not_need_completion_key(client, completions, monkeypatch):
    monkeypatch.setitem(app.config, 'OPENROUTER_API_KEY', None)
    question, answer = next(iter(STARTER_QUESTIONS.items()))

    resp = client.post('/api/chat', json={'starter_question': question, 'sessionId': SESSION_ID})

    assert resp.status_code == 200
    assert resp.get_json()['messages'][1]['content'] == answer


def test_chat_message_without_completion_key_is_configuration_error(client, completions, monkeypatch):
    monkeypatch.setitem(app.config, 'OPENROUTER_API_KEY', None)

    resp = client.post('/api/chat', json={'message': 'Hi', 'sessionId': SESSION_ID})

    assert resp.status_code == 500
    assert resp.get_json()['reason'] == 'missing_completion_key'


def test_question_text_tracked_exactly(client, store, completions, webhooks):
    say(client, ' What? ', source='')
    say(client, 'What?', source='')

    rows = {row['question_text']: row['frequency'] for row in store.select('popular_questions')}
    assert rows == {' What? ': 1, 'What?': 1}
    assert completions == [' What? ', 'What?']
