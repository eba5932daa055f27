"""
WSGI entry point.

Usage:
    flask --app wsgi run
    gunicorn wsgi:app
"""

from bluecrew import create_app

app = create_app()
