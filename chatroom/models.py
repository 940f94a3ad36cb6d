"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import BigInteger, Column, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import relationship

from chatroom.storage import Base


# SQLite only aliases the rowid for INTEGER primary keys
BigIntegerPK = BigInteger().with_variant(Integer, "sqlite")


class Identity(Base):
    """
    A chat participant, keyed by email.

    Table: identities
    Unique: lower(email) (one identity per address regardless of case; the
    name may change, the email keeps the spelling of the first post)
    """
    __tablename__ = "identities"

    id = Column(Integer, primary_key=True)
    name = Column(String(50), nullable=False)
    email = Column(String(255), nullable=False)
    created_at = Column(String, nullable=False)  # Server time ISO-8601

    __table_args__ = (
        Index("uq_identities_email_lower", func.lower(email), unique=True),
        {"sqlite_autoincrement": True},
    )

    messages = relationship(
        "Message",
        back_populates="identity",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Message(Base):
    """
    A posted chat message.

    Table: messages
    Primary Key: id, assigned by the store in insertion order and used as
    the synchronization watermark.
    """
    __tablename__ = "messages"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(BigIntegerPK, primary_key=True)
    identity_id = Column(
        Integer,
        ForeignKey("identities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    content = Column(Text, nullable=False)
    client_address = Column(String(45), nullable=True)
    created_at = Column(String, nullable=False, index=True)  # Server time ISO-8601

    identity = relationship("Identity", back_populates="messages")
