"""
Status reconciler: applies delivery-status callbacks to stored messages.

Every callback is appended to message_status_history, whether or not the
referenced message is known. The message's current status is simply
overwritten with the latest observed value; callbacks are assumed to
arrive in chronological order.
"""

import logging
from typing import NamedTuple, Optional

from sqlalchemy import update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wa_ingest.events import ConversationWindow, StatusUpdateEvent
from wa_ingest.models import MESSAGE_STATUSES, Conversation, Message, MessageStatusEvent
from wa_ingest.storage import StorageError
from wa_ingest.utils import utc_now

logger = logging.getLogger(__name__)


class StatusOutcome(NamedTuple):
    matched: bool  # False means a reconciliation miss
    conversation_recorded: bool


def _record_conversation(db: Session, event: StatusUpdateEvent, window: ConversationWindow) -> bool:
    """Insert-if-absent the conversation window; False when skipped or already known."""
    contact_id: Optional[int] = (
        db.query(Message.contact_id)
        .filter(Message.wa_message_id == event.wa_message_id)
        .scalar()
    )
    if contact_id is None:
        logger.info(
            f"Skipping conversation {window.wa_conversation_id}: "
            f"message {event.wa_message_id} unknown"
        )
        return False

    stmt = sqlite_insert(Conversation).values(
        wa_conversation_id=window.wa_conversation_id,
        contact_id=contact_id,
        origin_type=window.origin_type,
        started_at=event.timestamp,
        expires_at=window.expires_at,
        created_at=utc_now(),
    ).on_conflict_do_nothing(index_elements=[Conversation.wa_conversation_id])

    result = db.execute(stmt)
    return result.rowcount == 1


def apply_status(db: Session, event: StatusUpdateEvent) -> StatusOutcome:
    """
    Apply one status callback in a single transaction.

    - Overwrites messages.status (no-op when the message is unknown, or when
      the status is not one the message table tracks)
    - Appends a status-history row, always
    - Records the conversation window, if present and the message is known

    Returns:
        StatusOutcome(matched, conversation_recorded)

    Raises:
        StorageError: on any database failure
    """
    logger.info(f"Applying status: id={event.wa_message_id}, status={event.status}")

    try:
        matched = False
        if event.status in MESSAGE_STATUSES:
            result = db.execute(
                update(Message)
                .where(Message.wa_message_id == event.wa_message_id)
                .values(status=event.status)
            )
            matched = result.rowcount > 0
        else:
            exists = db.query(Message.id).filter(Message.wa_message_id == event.wa_message_id).first()
            matched = exists is not None
            logger.warning(f"Untracked status value '{event.status}' for {event.wa_message_id}, history only")

        db.add(MessageStatusEvent(
            wa_message_id=event.wa_message_id,
            status=event.status,
            timestamp=event.timestamp,
            error_code=event.error_code,
            error_message=event.error_message,
            created_at=utc_now(),
        ))

        conversation_recorded = False
        if event.conversation is not None:
            conversation_recorded = _record_conversation(db, event, event.conversation)

        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to apply status for {event.wa_message_id}: {e}")
        raise StorageError(f"status update failed for {event.wa_message_id}") from e

    if not matched:
        logger.warning(f"Reconciliation miss: no stored message {event.wa_message_id}")
    return StatusOutcome(matched=matched, conversation_recorded=conversation_recorded)
