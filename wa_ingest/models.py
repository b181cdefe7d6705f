"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py; for the
normalized webhook events, see events.py.

All timestamps are ISO-8601 UTC strings (YYYY-MM-DDTHH:MM:SSZ), which
sort chronologically as plain text.
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from wa_ingest.storage import Base

MESSAGE_STATUSES = ("received", "sent", "delivered", "read", "failed")
DIRECTIONS = ("incoming", "outgoing")
SELECTION_TYPES = ("button_reply", "list_reply")


def _in_list(column: str, values) -> str:
    return f"{column} IN ({', '.join(repr(v) for v in values)})"


class Contact(Base):
    """
    A conversation participant identified by their WhatsApp address.

    Table: contacts
    Unique: wa_id (one row per external address)
    """
    __tablename__ = "contacts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wa_id = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=True)
    phone_number = Column(String, nullable=True)
    first_seen_at = Column(String, nullable=False)
    last_message_at = Column(String, nullable=False)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)

    messages = relationship("Message", back_populates="contact")


class Message(Base):
    """
    An inbound or outbound message.

    Table: messages
    Unique: wa_message_id (idempotency key for inserts)

    Exactly one content group is populated per row: ``content`` (text,
    structured JSON or raw snapshot), the media columns, or the location
    columns. See messages.content_columns().
    """
    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint(_in_list("direction", DIRECTIONS), name="ck_messages_direction"),
        CheckConstraint(_in_list("status", MESSAGE_STATUSES), name="ck_messages_status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    wa_message_id = Column(String, unique=True, nullable=False)
    contact_id = Column(Integer, ForeignKey("contacts.id"), nullable=False, index=True)
    direction = Column(String, nullable=False, index=True)
    type = Column(String, nullable=False, index=True)
    content = Column(Text, nullable=True)
    media_id = Column(String, nullable=True)
    media_mime_type = Column(String, nullable=True)
    media_filename = Column(String, nullable=True)
    caption = Column(Text, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    location_name = Column(String, nullable=True)
    location_address = Column(String, nullable=True)
    # Soft reference to another message's wa_message_id; the target may never arrive
    reply_to_message_id = Column(String, nullable=True)
    status = Column(String, nullable=False, default="received", index=True)
    timestamp = Column(String, nullable=False)  # When it happened (external)
    created_at = Column(String, nullable=False)  # When we learned about it

    contact = relationship("Contact", back_populates="messages")
    selection = relationship("InteractiveSelection", back_populates="message", uselist=False)

    @property
    def contact_wa_id(self) -> str:
        return self.contact.wa_id

    @property
    def contact_name(self):
        return self.contact.name


Index("idx_messages_timestamp", Message.timestamp.desc())


class MessageStatusEvent(Base):
    """
    Append-only history of delivery-status callbacks.

    Table: message_status_history
    Correlated to messages by wa_message_id only, so callbacks for unknown
    messages are still recorded.
    """
    __tablename__ = "message_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wa_message_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False)
    timestamp = Column(String, nullable=False)
    error_code = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(String, nullable=False)


class Conversation(Base):
    """
    A billing conversation window derived from status callbacks.

    Table: conversations
    Unique: wa_conversation_id
    """
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wa_conversation_id = Column(String, unique=True, nullable=False)
    contact_id = Column(Integer, ForeignKey("contacts.id"), nullable=False, index=True)
    origin_type = Column(String, nullable=False)
    started_at = Column(String, nullable=False)
    expires_at = Column(String, nullable=True)
    created_at = Column(String, nullable=False)


class InteractiveSelection(Base):
    """
    Button or list selection carried by an interactive message.

    Table: interactive_selections
    One-to-one with messages.
    """
    __tablename__ = "interactive_selections"
    __table_args__ = (
        CheckConstraint(_in_list("selection_type", SELECTION_TYPES), name="ck_selection_type"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(Integer, ForeignKey("messages.id"), unique=True, nullable=False)
    selection_type = Column(String, nullable=False)
    selection_id = Column(String, nullable=False)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(String, nullable=False)

    message = relationship("Message", back_populates="selection")
