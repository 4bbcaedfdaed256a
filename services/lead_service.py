"""Webhook delivery and contact profile storage for captured leads."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

import requests

from services.errors import ConfigurationError, WebhookError
from services.side_effects import best_effort
from services.store import RecordStore, utc_now_iso

logger = logging.getLogger(__name__)

CONTACT_FIELDS = ('full_name', 'email', 'phone', 'law_firm_name', 'practice_type')


@dataclass
class WebhookPayload:
    url: str
    body: dict
    label: str = 'webhook'
    timeout: float = 15.0
    headers: dict = field(default_factory=dict)


def post_webhook(payload: WebhookPayload) -> requests.Response:
    """POST ``payload.body`` as JSON. Raises WebhookError on transport failure or non-2xx."""
    try:
        response = requests.post(payload.url, json=payload.body, headers=payload.headers or None, timeout=payload.timeout)
    except requests.exceptions.RequestException as exc:
        logger.error('Webhook %s failed: %s', payload.label, exc)
        raise WebhookError(f'Webhook {payload.label} could not be delivered') from exc

    if not response.ok:
        logger.error('Webhook %s responded with status %s: %s', payload.label, response.status_code, response.text)
        raise WebhookError(
            f'Webhook {payload.label} responded with status {response.status_code}',
            upstream_status=response.status_code,
            upstream_body=response.text,
        )

    logger.info('Webhook delivered: label=%s status=%s', payload.label, response.status_code)
    return response


def forward_form_data(config, body: dict) -> str:
    """Pass ``body`` through verbatim to the form webhook and return the upstream response text."""
    url = config.get('FORM_WEBHOOK_URL')
    if not url:
        raise ConfigurationError(details='FORM_WEBHOOK_URL not configured', reason='missing_webhook_url')
    response = post_webhook(WebhookPayload(
        url=url,
        body=body,
        label='form-data',
        timeout=config.get('OUTBOUND_TIMEOUT_SECONDS', 15.0),
    ))
    return response.text


def post_configured_webhook(config, setting: str, body: dict, label: str) -> Optional[requests.Response]:
    """Deliver to an optional webhook; an unset URL is logged and skipped."""
    url = config.get(setting)
    if not url:
        logger.warning('Skipping %s webhook: %s is not set', label, setting)
        return None
    return post_webhook(WebhookPayload(
        url=url,
        body=body,
        label=label,
        timeout=config.get('OUTBOUND_TIMEOUT_SECONDS', 15.0),
    ))


def contact_payload(contact: dict, *, source: str, trigger: Optional[str] = None,
                    fallback_email: Optional[str] = None) -> dict:
    """Webhook body for a (possibly partial) contact record; unknown fields are empty strings."""
    body = {name: contact.get(name) or '' for name in CONTACT_FIELDS}
    if not body['email'] and fallback_email:
        body['email'] = fallback_email
    body['source'] = source
    if trigger:
        body['trigger'] = trigger
    return body


def upsert_profile(store: RecordStore, contact: dict, source: str) -> str:
    """Create or update the profile keyed by email."""
    values = {
        'name': contact.get('full_name'),
        'phone': contact.get('phone'),
        'law_firm_name': contact.get('law_firm_name'),
        'practice_type': contact.get('practice_type'),
        'source': source,
        'updated_at': utc_now_iso(),
    }
    outcome = store.upsert('profiles', {'email': contact['email']}, values)
    logger.info('User profile %s for source=%s', outcome, source)
    return outcome


class LeadNotifier:
    """Side-channel delivery used by the intake flow.

    Both entry points are best-effort: failures are logged and swallowed so
    they never reach the chat transcript.
    """

    def __init__(self, config, store: RecordStore):
        self.config = config
        self.store = store

    def notify(self, body: dict) -> None:
        logger.info('Sending %s notification', body.get('trigger', 'contact'))
        best_effort('form-data webhook', forward_form_data, self.config, body)

    def flush(self, contact: dict, source: str) -> None:
        """Send a completed contact record to the webhook and upsert its profile.

        The two deliveries are independent: a webhook failure does not skip
        the profile upsert.
        """
        best_effort('contact webhook', forward_form_data, self.config, contact_payload(contact, source=source))
        best_effort('profile upsert', upsert_profile, self.store, contact, source)
