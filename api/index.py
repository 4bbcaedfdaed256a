"""
Vercel serverless entry point for the AI Masterclass site.

NOTE ON STORAGE + VERCEL:
Vercel's serverless functions use an ephemeral filesystem except for /tmp, so
the local SQLite store does not persist between invocations. Set
STORE_BACKEND=rest with BACKEND_URL and BACKEND_KEY to use the hosted record
store in production. DATABASE_PATH=/tmp/masterclass.db is fine for trying
the UI; data is lost on cold starts.
"""

import sys
import os

# Make the project root importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Import the Flask app object
from app import app, init_db

with app.app_context():
    init_db()

# Vercel expects a handler named `app` at module level
# The @vercel/python runtime calls app(environ, start_response) directly
