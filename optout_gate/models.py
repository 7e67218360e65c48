"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Column, String, Text

from optout_gate.storage import Base


class Record(Base):
    """
    One named JSON document (config, credentials, optouts, history).

    Table: records
    Primary Key: key
    """
    __tablename__ = "records"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)  # JSON text
    updated_at = Column(String, nullable=False)  # Server time ISO-8601
