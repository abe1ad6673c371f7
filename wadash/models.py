"""
SQLAlchemy ORM models for database tables.

Only the blocklist is stored in the database; messages live in the in-memory
cache. For Pydantic schemas, see schemas.py.
"""

from sqlalchemy import Column, String

from wadash.storage import Base


class BlockedNumber(Base):
    """
    A counterpart number whose conversations are treated as spam.

    Table: blocked_numbers
    Primary Key: phone_number (blocking twice is a no-op)
    """
    __tablename__ = "blocked_numbers"

    phone_number = Column(String, primary_key=True, index=True)
    blocked_at = Column(String, nullable=False)  # Server time ISO-8601
