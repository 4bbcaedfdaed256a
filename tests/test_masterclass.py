import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

os.environ.setdefault('SECRET_KEY', 'test-secret')

from app import app, init_db
from services.session_context import ACCESS_KEY

REGISTRATION_URL = 'https://hooks.example.com/registration'
ACCESS_URL = 'https://hooks.example.com/access'
FORM_URL = 'https://hooks.example.com/form'
PILOT_URL = 'https://hooks.example.com/pilot'

VALID_FORM = {
    'full_name': 'Jane Doe',
    'email': 'jane@doelaw.com',
    'phone': '(555) 123-4567',
    'firm_name': 'Doe Law',
    'practice_area': 'family-law',
}


@pytest.fixture
def client():
    db_fd, db_path = tempfile.mkstemp()
    app.config.update(
        DATABASE_PATH=db_path,
        STORE_BACKEND='sqlite',
        TESTING=True,
        WTF_CSRF_ENABLED=False,
        SESSION_COOKIE_SECURE=False,
        REGISTRATION_WEBHOOK_URL=REGISTRATION_URL,
        ACCESS_WEBHOOK_URL=ACCESS_URL,
        FORM_WEBHOOK_URL=FORM_URL,
        PILOT_WEBHOOK_URL=PILOT_URL,
        PAYMENT_LINK_URL='https://pay.example.com/link',
        INTAKE_SOURCE_MARKER='fb',
    )
    with app.app_context():
        init_db()
    with app.test_client() as c:
        yield c
    os.close(db_fd)
    os.unlink(db_path)


class OkResponse:
    status_code = 200
    ok = True
    text = '{}'


@pytest.fixture
def posted(monkeypatch):
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append((url, json))
        return OkResponse()

    monkeypatch.setattr('services.lead_service.requests.post', fake_post)
    return calls


def grant_access(client, hours=48, email='jane@doelaw.com'):
    with client.session_transaction() as sess:
        sess[ACCESS_KEY] = {
            'email': email,
            'name': 'Jane Doe',
            'firm_name': 'Doe Law',
            'expires_at': (datetime.now(timezone.utc) + timedelta(hours=hours)).isoformat(),
        }


def test_gate_shown_without_access(client, posted):
    response = client.get('/masterclass')
    assert response.status_code == 200
    assert b'Get instant access to the workshop replay' in response.data
    assert b'<iframe' not in response.data
    assert posted == []


def test_free_email_domain_rejected(client, posted):
    response = client.post('/masterclass', data=dict(VALID_FORM, email='jane@gmail.com'))
    assert response.status_code == 400
    assert b'Please use your work email address' in response.data
    assert posted == []


def test_short_phone_rejected(client, posted):
    response = client.post('/masterclass', data=dict(VALID_FORM, phone='555-1234'))
    assert response.status_code == 400
    assert b'Please enter a valid phone number' in response.data
    assert posted == []


def test_valid_registration_grants_access(client, posted):
    response = client.post('/masterclass', data=VALID_FORM, follow_redirects=True)

    assert response.status_code == 200
    assert b'<iframe' in response.data
    assert b'Apply for the pilot program' in response.data

    assert [url for url, _ in posted] == [REGISTRATION_URL, FORM_URL, ACCESS_URL]
    registration = posted[0][1]
    assert registration == {
        'fullName': 'Jane Doe',
        'email': 'jane@doelaw.com',
        'phone': '(555) 123-4567',
        'firmName': 'Doe Law',
        'practiceArea': 'family-law',
    }
    assert posted[1][1]['source'] == 'form'
    assert posted[2][1]['email'] == 'jane@doelaw.com'
    assert posted[2][1]['source'] == 'form'


def test_social_registration_skips_form_proxy(client, posted):
    response = client.post('/masterclass?source=fb', data=VALID_FORM)

    assert response.status_code == 302
    assert 'source=fb' in response.headers['Location']
    assert [url for url, _ in posted] == [REGISTRATION_URL, ACCESS_URL]


def test_registration_failure_flashes_error(client, monkeypatch):
    class Failed:
        status_code = 503
        ok = False
        text = 'unavailable'

    monkeypatch.setattr('services.lead_service.requests.post', lambda url, json=None, headers=None, timeout=None: Failed())
    response = client.post('/masterclass', data=VALID_FORM)

    assert response.status_code == 200
    assert b'Registration error. Please try again or contact support.' in response.data
    assert b'<iframe' not in response.data


def test_access_link_grants_direct_access(client, posted):
    response = client.get('/masterclass?access=true')

    assert b'<iframe' in response.data
    assert posted == [(ACCESS_URL, posted[0][1])]
    assert posted[0][1]['email'] == 'direct-access@temp.com'
    assert posted[0][1]['source'] == 'url_parameter'


def test_email_link_grants_access(client, posted):
    response = client.get('/masterclass?email=partner@firm.com')

    assert b'<iframe' in response.data
    assert posted[0][1]['email'] == 'partner@firm.com'


def test_social_source_grants_access(client, posted):
    response = client.get('/masterclass?source=training')

    assert b'<iframe' in response.data
    assert posted[0][1]['email'] == 'social-user@temp.com'


def test_expired_grant_shows_gate(client, posted):
    grant_access(client, hours=-1)
    response = client.get('/masterclass')

    assert b'Get instant access to the workshop replay' in response.data
    with client.session_transaction() as sess:
        assert ACCESS_KEY not in sess


def test_pilot_application_redirects_to_checkout(client, posted):
    grant_access(client)
    response = client.post('/masterclass/pilot', data={
        'first_name': 'Jane',
        'last_name': 'Doe',
        'email': 'jane@doelaw.com',
        'phone': '555-123-4567',
        'firm_name': 'Doe Law',
        'practice_area': 'family-law',
        'firm_size': '2-5',
        'message': '',
    })

    assert response.status_code == 302
    assert response.headers['Location'] == 'https://pay.example.com/link?prefilled_email=jane%40doelaw.com'
    assert posted[0][0] == PILOT_URL
    assert posted[0][1]['firstName'] == 'Jane'
    assert 'submittedAt' in posted[0][1]


def test_pilot_requires_access(client, posted):
    response = client.post('/masterclass/pilot', data={'email': 'jane@doelaw.com'})

    assert response.status_code == 302
    assert response.headers['Location'].endswith('/masterclass')
    assert posted == []


def test_pilot_failure_flashes_error(client, monkeypatch):
    class Failed:
        status_code = 500
        ok = False
        text = 'boom'

    monkeypatch.setattr('services.lead_service.requests.post', lambda url, json=None, headers=None, timeout=None: Failed())
    grant_access(client)
    response = client.post('/masterclass/pilot', data={'email': 'jane@doelaw.com'}, follow_redirects=True)

    assert b'Submission error. Please try again or contact support.' in response.data
