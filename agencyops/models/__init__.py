"""
Agency Operations Platform
SQLAlchemy extension instance shared by every model module.

Usage:
    from agencyops.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
