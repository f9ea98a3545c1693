"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi seed-roles 1
    gunicorn wsgi:app
"""

from qms import create_app

app = create_app()
