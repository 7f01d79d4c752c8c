"""
Job Progression Platform - SQLAlchemy models package.

Every model module imports the shared ``db`` handle from here; the
application factory calls ``db.init_app(app)``.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
