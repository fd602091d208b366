"""
GRC Risk Workflow Service
WSGI entry point.

Usage:
    gunicorn wsgi:app                   # serve with APP_ENV=production
    flask --app wsgi db init            # first time only (creates migrations/)
    flask --app wsgi db migrate -m "description"
    flask --app wsgi db upgrade
"""

from app import create_app

app = create_app()
