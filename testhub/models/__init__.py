"""
Test Hub
Shared SQLAlchemy instance.

Usage:
    from testhub.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
