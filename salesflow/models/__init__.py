"""
Sales Project Workflow Platform
SQLAlchemy extension instance shared by every model module.

Usage:
    from salesflow.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
