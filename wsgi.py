"""
WSGI / Flask-Migrate entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db upgrade
    flask --app wsgi run-job signature_expiration_sweep
"""

from signflow import create_app

app = create_app()
