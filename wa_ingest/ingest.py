"""
Ingestion loop: routes normalized events to the store, one at a time.

A failure on one event is logged, counted and rolled back; the remaining
events of the notification are still processed. The upstream sender owns
retries, so nothing here retries.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Iterable

from sqlalchemy.orm import Session

from wa_ingest.events import DeliveryErrorEvent, Event, IncomingMessageEvent, StatusUpdateEvent
from wa_ingest.messages import insert_incoming
from wa_ingest.metrics import record_event_outcome
from wa_ingest.statuses import apply_status

logger = logging.getLogger(__name__)


@dataclass
class IngestSummary:
    messages_created: int = 0
    messages_duplicate: int = 0
    statuses_applied: int = 0
    status_misses: int = 0
    conversations_recorded: int = 0
    delivery_errors: int = 0
    failures: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


def _handle_message(db: Session, event: IncomingMessageEvent, summary: IngestSummary) -> None:
    _, is_duplicate = insert_incoming(db, event)
    if is_duplicate:
        summary.messages_duplicate += 1
        record_event_outcome("message", "duplicate")
    else:
        summary.messages_created += 1
        record_event_outcome("message", "created")
    logger.info(f"Message {event.wa_message_id} from {event.from_address}: {'duplicate' if is_duplicate else 'created'}")


def _handle_status(db: Session, event: StatusUpdateEvent, summary: IngestSummary) -> None:
    outcome = apply_status(db, event)
    if outcome.matched:
        summary.statuses_applied += 1
        record_event_outcome("status", "matched")
    else:
        summary.status_misses += 1
        record_event_outcome("status", "miss")
    if outcome.conversation_recorded:
        summary.conversations_recorded += 1

    if event.status == "failed" and event.error_code is not None:
        logger.error(
            "Delivery failed",
            extra={
                "wa_message_id": event.wa_message_id,
                "error_code": event.error_code,
                "error_message": event.error_message,
            },
        )


def _handle_error(event: DeliveryErrorEvent, summary: IngestSummary) -> None:
    summary.delivery_errors += 1
    record_event_outcome("error", "recorded")
    logger.error(
        "Webhook error",
        extra={
            "error_code": event.code,
            "error_title": event.title,
            "error_message": event.message,
            "error_details": event.details,
        },
    )


def ingest_events(db: Session, events: Iterable[Event]) -> IngestSummary:
    """
    Persist a notification's events sequentially.

    Args:
        db: Database session
        events: Output of normalizer.normalize()

    Returns:
        IngestSummary with per-outcome counts
    """
    summary = IngestSummary()

    for event in events:
        try:
            if isinstance(event, IncomingMessageEvent):
                _handle_message(db, event, summary)
            elif isinstance(event, StatusUpdateEvent):
                _handle_status(db, event, summary)
            elif isinstance(event, DeliveryErrorEvent):
                _handle_error(event, summary)
            else:
                logger.warning(f"Unhandled event type: {type(event).__name__}")
        except Exception:
            # Partial-batch tolerance: log and move on to the next event
            db.rollback()
            summary.failures += 1
            record_event_outcome(event.event, "failed")
            logger.exception(f"Failed to ingest {event.event} event")

    logger.info(f"Ingestion finished: {summary.as_dict()}")
    return summary
