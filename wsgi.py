"""
WSGI / Flask CLI entry point.

Usage:
    flask --app wsgi seed-default-stages
    flask --app wsgi db migrate -m "description"
    flask --app wsgi db upgrade
    gunicorn wsgi:app
"""

from jobflow import create_app

app = create_app()
