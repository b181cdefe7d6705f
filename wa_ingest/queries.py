"""
Read-side projections over contacts and messages.

Not-found is reported as None (or an empty list), never as an exception.
"""

import logging
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session, contains_eager, joinedload

from wa_ingest.models import Contact, Message, MessageStatusEvent

logger = logging.getLogger(__name__)


def get_stats(db: Session) -> dict:
    """
    Aggregate counts for the /data/stats endpoint.

    Computes:
    - total_contacts
    - total_messages, incoming_messages, outgoing_messages
    - messages_by_type: [{type, count}], most frequent first
    """
    logger.info("Computing message statistics")

    total_contacts = db.query(func.count(Contact.id)).scalar() or 0
    total_messages = db.query(func.count(Message.id)).scalar() or 0
    incoming = db.query(func.count(Message.id)).filter(Message.direction == "incoming").scalar() or 0
    outgoing = db.query(func.count(Message.id)).filter(Message.direction == "outgoing").scalar() or 0

    by_type = (
        db.query(Message.type, func.count(Message.id).label("count"))
        .group_by(Message.type)
        .order_by(func.count(Message.id).desc(), Message.type.asc())
        .all()
    )

    logger.info(f"Stats computed: {total_messages} messages, {total_contacts} contacts")
    return {
        "total_contacts": total_contacts,
        "total_messages": total_messages,
        "incoming_messages": incoming,
        "outgoing_messages": outgoing,
        "messages_by_type": [{"type": row.type, "count": row.count} for row in by_type],
    }


def list_contacts(db: Session, limit: int = 50, offset: int = 0) -> List[Contact]:
    """Contacts ordered by most recent activity."""
    return (
        db.query(Contact)
        .order_by(Contact.last_message_at.desc(), Contact.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def list_messages(
    db: Session,
    contact: Optional[str] = None,
    direction: Optional[str] = None,
    kind: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[Message], int]:
    """
    Retrieve messages with pagination and filtering.

    Args:
        db: Database session
        contact: Filter by contact wa_id (exact match)
        direction: 'incoming' or 'outgoing'
        kind: Message type (exact match)
        start: Inclusive lower bound on timestamp (ISO-8601 UTC)
        end: Inclusive upper bound on timestamp (ISO-8601 UTC)
        limit: Maximum number of messages to return
        offset: Number of messages to skip

    Returns:
        Tuple of (messages newest first, total count matching filters)
    """
    logger.debug(f"Filters: contact={contact}, direction={direction}, type={kind}, start={start}, end={end}")

    query = db.query(Message).join(Message.contact)

    if contact:
        query = query.filter(Contact.wa_id == contact)
    if direction:
        query = query.filter(Message.direction == direction)
    if kind:
        query = query.filter(Message.type == kind)
    if start:
        query = query.filter(Message.timestamp >= start)
    if end:
        query = query.filter(Message.timestamp <= end)

    total = query.count()

    messages = (
        query.options(contains_eager(Message.contact))
        .order_by(Message.timestamp.desc(), Message.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    logger.info(f"Retrieved {len(messages)} of {total} total messages")
    return messages, total


def get_message(db: Session, wa_message_id: str) -> Optional[Tuple[Message, List[MessageStatusEvent]]]:
    """
    Single message with its contact, selection and status history.

    Returns:
        (message, history oldest first), or None if not found
    """
    message = (
        db.query(Message)
        .options(joinedload(Message.contact), joinedload(Message.selection))
        .filter(Message.wa_message_id == wa_message_id)
        .first()
    )
    if message is None:
        logger.info(f"Message lookup: {wa_message_id} not found")
        return None

    history = (
        db.query(MessageStatusEvent)
        .filter(MessageStatusEvent.wa_message_id == wa_message_id)
        .order_by(MessageStatusEvent.timestamp.asc(), MessageStatusEvent.id.asc())
        .all()
    )
    return message, history


def get_conversation(db: Session, address: str, limit: int = 50) -> List[Message]:
    """Message history with one contact, newest first."""
    return (
        db.query(Message)
        .join(Message.contact)
        .options(contains_eager(Message.contact))
        .filter(Contact.wa_id == address)
        .order_by(Message.timestamp.desc(), Message.id.desc())
        .limit(limit)
        .all()
    )
