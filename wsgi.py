"""
Flask-Migrate / Alembic entry point.

Usage:
    flask db init       # first time only (creates migrations/ scaffolding)
    flask db upgrade
    flask send-overdue-digest
"""

from agencyops import create_app

app = create_app()
