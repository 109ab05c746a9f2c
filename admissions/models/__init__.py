"""
Admissions Workflow Platform
Model package — shared SQLAlchemy instance.

Every model module imports ``db`` from here:

    from admissions.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
