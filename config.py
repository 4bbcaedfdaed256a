"""
Configuration classes for the AI Masterclass site
Loads settings from environment variables
"""

import os
from dotenv import load_dotenv

load_dotenv()


class Config:
    """Application configuration"""

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY')
    if not SECRET_KEY:
        raise RuntimeError("SECRET_KEY environment variable must be set")

    APP_ENV = os.environ.get('APP_ENV', 'production')
    DEBUG = os.environ.get('FLASK_ENV') == 'development' or os.environ.get('FLASK_DEBUG') == '1'

    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = os.environ.get('SESSION_COOKIE_SAMESITE', 'Lax')
    SESSION_COOKIE_SECURE = os.environ.get('SESSION_COOKIE_SECURE', '1') == '1'

    # Record store: 'sqlite' keeps everything in DATABASE_PATH, 'rest' talks to
    # the hosted backend at BACKEND_URL with BACKEND_KEY
    STORE_BACKEND = os.environ.get('STORE_BACKEND', 'sqlite')
    DATABASE_PATH = os.environ.get('DATABASE_PATH') or 'masterclass.db'
    BACKEND_URL = os.environ.get('BACKEND_URL')
    BACKEND_KEY = os.environ.get('BACKEND_KEY')

    # Admin credentials
    ADMIN_USERNAME = os.environ.get('ADMIN_USERNAME') or 'admin'
    ADMIN_PASSWORD = os.environ.get('ADMIN_PASSWORD')
    ADMIN_PASSWORD_HASH = os.environ.get('ADMIN_PASSWORD_HASH')
    ADMIN_SESSION_HOURS = int(os.environ.get('ADMIN_SESSION_HOURS', '24'))

    # Site
    SITE_NAME = os.environ.get('SITE_NAME') or 'Practical AI for Law Firms'
    SITE_URL = os.environ.get('SITE_URL', 'https://ai-track-masterclass.lovable.app')
    SITE_TITLE = os.environ.get('SITE_TITLE', 'AI Track Masterclass Chat')
    MASTERCLASS_VIDEO_URL = os.environ.get(
        'MASTERCLASS_VIDEO_URL',
        'https://player.vimeo.com/video/1122004006?badge=0&autopause=0&player_id=0&app_id=58479',
    )
    MASTERCLASS_ACCESS_HOURS = int(os.environ.get('MASTERCLASS_ACCESS_HOURS', '48'))

    # Chat completion (OpenRouter speaks the OpenAI wire format)
    OPENROUTER_API_KEY = os.environ.get('OPENROUTER_API_KEY')
    COMPLETION_BASE_URL = os.environ.get('COMPLETION_BASE_URL', 'https://openrouter.ai/api/v1')
    COMPLETION_MODEL = os.environ.get('COMPLETION_MODEL', 'openai/gpt-4o-mini')
    COMPLETION_TEMPERATURE = float(os.environ.get('COMPLETION_TEMPERATURE', '0.7'))
    COMPLETION_MAX_TOKENS = int(os.environ.get('COMPLETION_MAX_TOKENS', '500'))
    KNOWLEDGE_CONTEXT_LIMIT = int(os.environ.get('KNOWLEDGE_CONTEXT_LIMIT', '5'))

    # Webhooks
    FORM_WEBHOOK_URL = os.environ.get('FORM_WEBHOOK_URL')
    REGISTRATION_WEBHOOK_URL = os.environ.get('REGISTRATION_WEBHOOK_URL')
    ACCESS_WEBHOOK_URL = os.environ.get('ACCESS_WEBHOOK_URL')
    PILOT_WEBHOOK_URL = os.environ.get('PILOT_WEBHOOK_URL')
    PAYMENT_LINK_URL = os.environ.get('PAYMENT_LINK_URL', 'https://buy.stripe.com/aEU5n55qy2zScFycMN')
    OUTBOUND_TIMEOUT_SECONDS = float(os.environ.get('OUTBOUND_TIMEOUT_SECONDS', '15'))

    # Intake flow
    INTAKE_SOURCE_MARKER = os.environ.get('INTAKE_SOURCE_MARKER', 'fb')
    INTAKE_MIN_TURNS = int(os.environ.get('INTAKE_MIN_TURNS', '3'))
    INTAKE_NOTIFY_TURN = int(os.environ.get('INTAKE_NOTIFY_TURN', '5'))
    INTAKE_SESSION_TTL_HOURS = int(os.environ.get('INTAKE_SESSION_TTL_HOURS', '12'))

    # File upload
    MAX_CONTENT_LENGTH = int(os.environ.get('MAX_CONTENT_LENGTH', str(5 * 1024 * 1024)))

    # Rate limiting
    RATELIMIT_STORAGE_URI = os.environ.get('RATELIMIT_STORAGE_URI', 'memory://')

    # Monitoring / logging
    SENTRY_DSN = os.environ.get('SENTRY_DSN')
    SENTRY_TRACES_SAMPLE_RATE = float(os.environ.get('SENTRY_TRACES_SAMPLE_RATE', '0.1'))
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_DIR = os.environ.get('LOG_DIR', 'logs')
