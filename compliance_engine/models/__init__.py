"""
Compliance Obligation & Review Engine
Shared SQLAlchemy handle.

Every model module imports ``db`` from here:

    from compliance_engine.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
