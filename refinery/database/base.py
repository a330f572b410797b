# refinery/database/base.py
"""
SQLAlchemy declarative base for all Refinery models.
"""

from sqlalchemy.orm import declarative_base

# Declarative base for all models
Base = declarative_base()
