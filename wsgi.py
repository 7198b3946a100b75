"""
Flask-Migrate / Alembic and CLI entry point.

Usage:
    flask db init       # first time only (creates migrations/)
    flask db migrate -m "description"
    flask db upgrade
    flask run-job production_completion_reconcile
"""

from app import create_app

app = create_app()
