"""
Kasah QMS
Model registry — shared SQLAlchemy instance.

Usage:
    from qms.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
