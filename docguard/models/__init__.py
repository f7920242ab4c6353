"""
docguard models package.

The shared Flask-SQLAlchemy handle lives here so every model module and
service imports the same ``db`` object:

    from docguard.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
