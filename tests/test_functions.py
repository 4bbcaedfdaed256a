import os
import tempfile

import pytest
import requests

os.environ.setdefault('SECRET_KEY', 'test-secret')

from app import app, init_db
from services.chat_service import DEFAULT_SYSTEM_PROMPT
from services.completion_gateway import CompletionGateway, CompletionResult
from services.errors import CompletionError
from services.store import SqliteRecordStore


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
        calls.append((system_prompt, message))
        return CompletionResult(text='Hello from Ava', tokens_used=42)

    monkeypatch.setattr(CompletionGateway, 'complete', fake_complete)
    return calls


class FakeResponse:
    def __init__(self, status_code=200, text='{"received": true}'):
        self.status_code = status_code
        self.text = text

    @property
    def ok(self):
        return self.status_code < 400


# ===== /functions/chat =====

def test_chat_requires_message_and_session(client, completions):
    resp = client.post('/functions/chat', json={'message': 'Hi'})
    assert resp.status_code == 400
    assert resp.get_json() == {'error': 'Message and sessionId are required'}
    assert completions == []


def test_chat_missing_completion_key_is_configuration_error(client, monkeypatch):
    monkeypatch.setitem(app.config, 'OPENROUTER_API_KEY', None)
    resp = client.post('/functions/chat', json={'message': 'Hi', 'sessionId': 'session_1'})
    assert resp.status_code == 500
    assert resp.get_json() == {
        'error': 'Server configuration error',
        'reason': 'missing_completion_key',
        'details': 'OpenRouter API key not configured',
    }


def test_chat_missing_backend_config_is_configuration_error(client, monkeypatch):
    monkeypatch.setitem(app.config, 'STORE_BACKEND', 'rest')
    monkeypatch.setitem(app.config, 'BACKEND_URL', None)
    monkeypatch.setitem(app.config, 'BACKEND_KEY', None)
    resp = client.post('/functions/chat', json={'message': 'Hi', 'sessionId': 'session_1'})
    data = resp.get_json()
    assert resp.status_code == 500
    assert data['error'] == 'Server configuration error'
    assert data['reason'] == 'missing_backend_config'
    assert 'BACKEND_URL' in data['details']


def test_chat_builds_prompt_and_logs_exchange(client, store, completions):
    store.insert('chatbot_instructions', {'instruction_text': 'Be concise.', 'priority': 2, 'is_active': True})
    store.insert('chatbot_instructions', {'instruction_text': 'You are Ava.', 'priority': 1, 'is_active': True})
    store.insert('chatbot_instructions', {'instruction_text': 'Ignore me.', 'priority': 0, 'is_active': False})
    store.insert('knowledge_base', {
        'filename': 'notes.txt',
        'file_type': 'text/plain',
        'content': 'Masterclass notes',
        'status': 'active',
    })

    resp = client.post('/functions/chat', json={'message': 'What is covered?', 'sessionId': 'session_1'})
    data = resp.get_json()

    assert resp.status_code == 200
    assert data['response'] == 'Hello from Ava'
    assert isinstance(data['responseTime'], int)
    assert completions == [(
        'You are Ava.\nBe concise.\n\nRelevant knowledge base content:\nMasterclass notes',
        'What is covered?',
    )]

    rows = store.select('chat_analytics')
    assert len(rows) == 1
    assert rows[0]['session_id'] == 'session_1'
    assert rows[0]['user_email'] == 'anonymous@example.com'
    assert rows[0]['ai_response'] == 'Hello from Ava'
    assert rows[0]['tokens_used'] == 42


def test_chat_uses_default_prompt_without_instructions(client, completions):
    resp = client.post('/functions/chat', json={
        'message': 'Hello',
        'sessionId': 'session_1',
        'userEmail': 'jane@firm.com',
    })
    assert resp.status_code == 200
    assert completions[0][0] == DEFAULT_SYSTEM_PROMPT


def test_chat_upstream_failure_is_generic(client, store, monkeypatch):
    def failing_complete(self, system_prompt, message):
        raise CompletionError('Completion API request failed', upstream_status=401, upstream_body='invalid key sk-secret')

    monkeypatch.setattr(CompletionGateway, 'complete', failing_complete)
    resp = client.post('/functions/chat', json={'message': 'Hi', 'sessionId': 'session_1'})

    assert resp.status_code == 500
    assert resp.get_json()['error'] == 'Failed to get AI response'
    assert b'sk-secret' not in resp.data
    assert store.select('chat_analytics') == []


def test_function_responses_carry_cors_headers(client):
    resp = client.post('/functions/chat', json={})
    assert resp.headers['Access-Control-Allow-Origin'] == '*'

    preflight = client.options('/functions/chat')
    assert preflight.status_code == 200
    assert 'content-type' in preflight.headers['Access-Control-Allow-Headers']


# ===== /functions/increment-question =====

def test_increment_question_upserts_by_exact_text(client, store):
    for _ in range(2):
        resp = client.post('/functions/increment-question', json={'question': 'What is the price?'})
        assert resp.get_json() == {'success': True}
    client.post('/functions/increment-question', json={'question': 'what is the price?'})

    rows = {row['question_text']: row for row in store.select('popular_questions')}
    assert rows['What is the price?']['frequency'] == 2
    assert rows['What is the price?']['category'] == 'general'
    assert rows['what is the price?']['frequency'] == 1


def test_increment_question_requires_question(client):
    resp = client.post('/functions/increment-question', json={})
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'Question is required'


# ===== /functions/knowledge-upload =====

def test_knowledge_upload_missing_file_type_creates_nothing(client, store):
    resp = client.post('/functions/knowledge-upload', json={
        'filename': 'notes.txt',
        'content': 'Some notes',
        'fileSize': 10,
    })
    data = resp.get_json()

    assert resp.status_code == 400
    assert data['error'] == 'Filename, content, and fileType are required'
    assert 'details' in data
    assert store.select('knowledge_base') == []


def test_knowledge_upload_stores_active_document(client, store):
    resp = client.post('/functions/knowledge-upload', json={
        'filename': 'intake.md',
        'content': '# Intake blueprint',
        'fileType': 'text/markdown',
        'fileSize': 18,
    })
    data = resp.get_json()

    assert resp.status_code == 200
    assert data['success'] is True
    assert data['document']['filename'] == 'intake.md'
    assert data['document']['status'] == 'active'

    rows = store.select('knowledge_base')
    assert len(rows) == 1
    assert rows[0]['content'] == '# Intake blueprint'
    assert rows[0]['file_size'] == 18


# ===== /functions/submit-form-data =====

def test_submit_form_data_forwards_body_verbatim(client, monkeypatch):
    captured = []

    def fake_post(url, json=None, headers=None, timeout=None):
        captured.append((url, json))
        return FakeResponse(text='{"received": true}')

    monkeypatch.setattr('services.lead_service.requests.post', fake_post)
    body = {'full_name': 'Jane Doe', 'nested': {'any': ['shape']}}
    resp = client.post('/functions/submit-form-data', json=body)

    assert resp.status_code == 200
    assert resp.data == b'{"received": true}'
    assert captured == [('https://hooks.example.com/form', body)]


def test_submit_form_data_upstream_failure(client, monkeypatch):
    monkeypatch.setattr(
        'services.lead_service.requests.post',
        lambda url, json=None, headers=None, timeout=None: FakeResponse(502, 'bad gateway details'),
    )
    resp = client.post('/functions/submit-form-data', json={'email': 'jane@firm.com'})

    assert resp.status_code == 500
    assert resp.get_json()['error'] == 'Failed to submit form data'
    assert b'bad gateway details' not in resp.data


def test_submit_form_data_transport_failure(client, monkeypatch):
    def boom(url, json=None, headers=None, timeout=None):
        raise requests.exceptions.ConnectionError('connection refused')

    monkeypatch.setattr('services.lead_service.requests.post', boom)
    resp = client.post('/functions/submit-form-data', json={'email': 'jane@firm.com'})

    assert resp.status_code == 500
    assert resp.get_json()['error'] == 'Failed to submit form data'


def test_submit_form_data_without_webhook_url(client, monkeypatch):
    monkeypatch.setitem(app.config, 'FORM_WEBHOOK_URL', None)
    resp = client.post('/functions/submit-form-data', json={'email': 'jane@firm.com'})

    assert resp.status_code == 500
    assert resp.get_json()['reason'] == 'missing_webhook_url'
