"""Access form validation and webhook calls for the gated masterclass replay."""

import logging
import re
from datetime import datetime, timezone
from urllib.parse import quote

import bleach

from services.lead_service import forward_form_data, post_configured_webhook

logger = logging.getLogger(__name__)

EMAIL_REGEX = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
PHONE_REGEX = re.compile(r'^[\d\s\-+()]+$')
FREE_EMAIL_DOMAINS = {'gmail.com', 'yahoo.com', 'hotmail.com', 'outlook.com', 'aol.com'}

PRACTICE_AREAS = [
    ('personal-injury', 'Personal Injury'),
    ('family-law', 'Family Law'),
    ('criminal-defense', 'Criminal Defense'),
    ('estate-planning', 'Estate Planning'),
    ('business-law', 'Business Law'),
    ('real-estate', 'Real Estate'),
    ('immigration', 'Immigration'),
    ('other', 'Other'),
]

DIRECT_ACCESS = ('direct-access@temp.com', 'Direct Access User', 'Workshop Access')
SOCIAL_ACCESS = ('social-user@temp.com', 'Workshop Attendee', 'Law Firm')
SOCIAL_SOURCES = {'fb', 'training'}


def is_work_email(email):
    if not email or not EMAIL_REGEX.match(email):
        return False
    return email.split('@', 1)[1].lower() not in FREE_EMAIL_DOMAINS


def is_valid_phone(phone):
    if not phone or not PHONE_REGEX.match(phone):
        return False
    return len(re.sub(r'\D', '', phone)) >= 10


def validate_access_form(form):
    """Return ``(data, errors)``; ``errors`` is empty when the form is acceptable."""
    data = {
        'full_name': bleach.clean((form.get('full_name') or '').strip(), strip=True),
        'email': (form.get('email') or '').strip(),
        'phone': (form.get('phone') or '').strip(),
        'firm_name': bleach.clean((form.get('firm_name') or '').strip(), strip=True),
        'practice_area': (form.get('practice_area') or '').strip(),
    }
    errors = {}
    if not data['full_name']:
        errors['full_name'] = 'Full name is required'
    if not is_work_email(data['email']):
        errors['email'] = 'Please use your work email address'
    if not is_valid_phone(data['phone']):
        errors['phone'] = 'Please enter a valid phone number'
    if not data['firm_name']:
        errors['firm_name'] = 'Law firm name is required'
    if data['practice_area'] not in dict(PRACTICE_AREAS):
        errors['practice_area'] = 'Please select a practice area'
    return data, errors


def register_for_access(config, data, source=None):
    """Send the registration webhook and, for regular traffic, the form-submission proxy.

    Raises WebhookError or ConfigurationError when a delivery fails.
    """
    post_configured_webhook(config, 'REGISTRATION_WEBHOOK_URL', {
        'fullName': data['full_name'],
        'email': data['email'],
        'phone': data['phone'],
        'firmName': data['firm_name'],
        'practiceArea': data['practice_area'],
    }, 'masterclass-registration')

    if source != config.get('INTAKE_SOURCE_MARKER', 'fb'):
        forward_form_data(config, {
            'full_name': data['full_name'],
            'email': data['email'],
            'phone': data['phone'],
            'practice_area': data['practice_area'],
            'firm_name': data['firm_name'],
            'source': 'form',
        })
    logger.info('Masterclass registration sent for source=%s', source or 'direct')


def send_access_webhook(config, grant, source):
    return post_configured_webhook(config, 'ACCESS_WEBHOOK_URL', {
        'email': grant['email'],
        'fullName': grant['name'],
        'firmName': grant['firm_name'],
        'accessGranted': datetime.now(timezone.utc).isoformat(),
        'source': source,
    }, 'masterclass-access')


def pilot_application_from_form(form):
    fields = ('first_name', 'last_name', 'email', 'phone', 'firm_name', 'practice_area', 'firm_size', 'message')
    return {name: bleach.clean((form.get(name) or '').strip(), strip=True) for name in fields}


def submit_pilot_application(config, application):
    body = {
        'firstName': application['first_name'],
        'lastName': application['last_name'],
        'email': application['email'],
        'phone': application['phone'],
        'firmName': application['firm_name'],
        'practiceArea': application['practice_area'],
        'firmSize': application['firm_size'],
        'message': application['message'],
        'submittedAt': datetime.now(timezone.utc).isoformat(),
    }
    return post_configured_webhook(config, 'PILOT_WEBHOOK_URL', body, 'pilot-application')


def payment_redirect_url(config, email):
    return f"{config['PAYMENT_LINK_URL']}?prefilled_email={quote(email, safe='')}"
