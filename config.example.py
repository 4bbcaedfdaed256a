import os

class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'your-secret-key-here'

    # Admin login
    ADMIN_USERNAME = os.environ.get('ADMIN_USERNAME') or 'admin'
    ADMIN_PASSWORD_HASH = os.environ.get('ADMIN_PASSWORD_HASH')  # werkzeug generate_password_hash output

    # Record store
    STORE_BACKEND = 'rest'
    BACKEND_URL = os.environ.get('BACKEND_URL')  # e.g. https://<project>.supabase.co
    BACKEND_KEY = os.environ.get('BACKEND_KEY')

    # Chat completion
    OPENROUTER_API_KEY = os.environ.get('OPENROUTER_API_KEY')
    COMPLETION_MODEL = 'openai/gpt-4o-mini'

    # Webhooks
    FORM_WEBHOOK_URL = os.environ.get('FORM_WEBHOOK_URL')
    REGISTRATION_WEBHOOK_URL = os.environ.get('REGISTRATION_WEBHOOK_URL')
    ACCESS_WEBHOOK_URL = os.environ.get('ACCESS_WEBHOOK_URL')
    PILOT_WEBHOOK_URL = os.environ.get('PILOT_WEBHOOK_URL')

    # Intake flow
    INTAKE_MIN_TURNS = 3
    INTAKE_NOTIFY_TURN = 5
