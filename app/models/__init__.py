"""
Print Production Platform
Shared Flask-SQLAlchemy instance.

Usage:
    from app.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
