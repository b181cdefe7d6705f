"""
Message store: idempotent inserts keyed by the platform message id.
"""

import logging
from typing import Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from wa_ingest.contacts import upsert_contact
from wa_ingest.events import (
    IncomingMessageEvent,
    LocationContent,
    MediaContent,
    OutgoingExtras,
    StructuredContent,
    TextContent,
    UnrecognizedContent,
)
from wa_ingest.models import InteractiveSelection, Message
from wa_ingest.storage import StorageError
from wa_ingest.utils import utc_now

logger = logging.getLogger(__name__)

MEDIA_KINDS = ("image", "video", "audio", "document", "sticker")
TEXT_KINDS = ("text", "button", "system")

CONTENT_COLUMNS = (
    "content",
    "media_id",
    "media_mime_type",
    "media_filename",
    "caption",
    "latitude",
    "longitude",
    "location_name",
    "location_address",
)


def content_columns(content) -> Dict[str, object]:
    """
    Flatten a content variant into message columns.

    Every content column is present in the result; only the group that
    belongs to the variant can be non-null.
    """
    columns: Dict[str, object] = dict.fromkeys(CONTENT_COLUMNS)

    if isinstance(content, TextContent):
        columns["content"] = content.body
    elif isinstance(content, MediaContent):
        columns.update(
            media_id=content.media_id,
            media_mime_type=content.mime_type,
            media_filename=content.filename,
            caption=content.caption,
        )
    elif isinstance(content, LocationContent):
        columns.update(
            latitude=content.latitude,
            longitude=content.longitude,
            location_name=content.name,
            location_address=content.address,
        )
    elif isinstance(content, StructuredContent):
        columns["content"] = content.data
    elif isinstance(content, UnrecognizedContent):
        columns["content"] = content.raw_snapshot
    else:
        raise TypeError(f"unsupported content variant: {type(content).__name__}")

    return columns


def get_message_by_wa_id(db: Session, wa_message_id: str) -> Optional[Message]:
    return db.query(Message).filter(Message.wa_message_id == wa_message_id).first()


def _insert(db: Session, message: Message, selection: Optional[InteractiveSelection] = None) -> Tuple[Message, bool]:
    """
    Insert a message (and its selection) in one transaction.

    Returns:
        Tuple of (message, is_duplicate)
        - (new row, False): inserted
        - (existing row, True): wa_message_id already stored, nothing written

    Raises:
        StorageError: on any other database failure
    """
    wa_message_id = message.wa_message_id
    try:
        db.add(message)
        db.flush()
        if selection is not None:
            selection.message_id = message.id
            db.add(selection)
        db.commit()
    except IntegrityError as e:
        # wa_message_id already exists - this is expected for idempotency
        db.rollback()
        existing = get_message_by_wa_id(db, wa_message_id)
        if existing is None:
            logger.error(f"Integrity error inserting message {wa_message_id}: {e}")
            raise StorageError(f"message insert failed for {wa_message_id}") from e
        logger.info(f"Duplicate message detected: {wa_message_id}")
        return existing, True
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to insert message {wa_message_id}: {e}")
        raise StorageError(f"message insert failed for {wa_message_id}") from e

    db.refresh(message)
    logger.info(f"Message stored: {wa_message_id} ({message.direction}/{message.type})")
    return message, False


def insert_incoming(db: Session, event: IncomingMessageEvent) -> Tuple[Message, bool]:
    """
    Store an inbound message exactly once.

    The sender contact is upserted first (with the profile name, if any).
    For interactive messages with a recognized selection, the selection row
    is written in the same transaction as the message, so a duplicate
    delivery never adds a second selection.

    Args:
        db: Database session
        event: Normalized inbound message

    Returns:
        Tuple of (message, is_duplicate)
    """
    logger.info(f"Inserting incoming message: id={event.wa_message_id}, from={event.from_address}, type={event.kind}")

    contact = upsert_contact(db, event.from_address, event.profile_name)

    message = Message(
        wa_message_id=event.wa_message_id,
        contact_id=contact.id,
        direction="incoming",
        type=event.kind,
        reply_to_message_id=event.reply_to_message_id,
        status="received",
        timestamp=event.timestamp,
        created_at=utc_now(),
        **content_columns(event.content),
    )

    selection = None
    if event.kind == "interactive" and event.selection is not None:
        selection = InteractiveSelection(
            selection_type=event.selection.selection_type,
            selection_id=event.selection.selection_id,
            title=event.selection.title,
            description=event.selection.description,
            created_at=utc_now(),
        )

    return _insert(db, message, selection)


def outgoing_content(kind: str, content: Optional[str], extras: OutgoingExtras):
    """Pick the content variant for an outbound send of the given kind."""
    if kind == "location":
        return LocationContent(
            latitude=extras.latitude,
            longitude=extras.longitude,
            name=extras.location_name,
            address=extras.location_address,
        )
    if kind in MEDIA_KINDS:
        return MediaContent(
            media_id=extras.media_id,
            mime_type=extras.media_mime_type,
            filename=extras.filename if kind == "document" else None,
            caption=extras.caption,
        )
    if kind in TEXT_KINDS or content is None:
        return TextContent(body=content)
    return StructuredContent(data=content)


def insert_outgoing(
    db: Session,
    wa_message_id: str,
    to_address: str,
    kind: str,
    content: Optional[str] = None,
    extras: Optional[OutgoingExtras] = None,
) -> Tuple[Message, bool]:
    """
    Record an outbound send exactly once.

    The recipient contact is upserted without a name (sends carry no
    profile data). Initial status is 'sent'; the event time is now.

    Returns:
        Tuple of (message, is_duplicate)
    """
    extras = extras or OutgoingExtras()
    logger.info(f"Inserting outgoing message: id={wa_message_id}, to={to_address}, type={kind}")

    contact = upsert_contact(db, to_address)
    now = utc_now()

    message = Message(
        wa_message_id=wa_message_id,
        contact_id=contact.id,
        direction="outgoing",
        type=kind,
        reply_to_message_id=extras.reply_to_message_id,
        status="sent",
        timestamp=now,
        created_at=now,
        **content_columns(outgoing_content(kind, content, extras)),
    )
    return _insert(db, message)
