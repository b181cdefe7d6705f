"""
WhatsApp webhook normalization.

Converts one webhook notification ({object, entry: [{changes: [...]}]})
into an ordered list of internal events. Pure transform: nothing here
touches the database.

Only notification-level shape problems raise (InvalidNotificationError).
A malformed entry, change or item is logged and skipped so the rest of
the batch still gets processed.
"""

import json
import logging
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from wa_ingest.events import (
    ConversationWindow,
    DeliveryErrorEvent,
    Event,
    IncomingMessageEvent,
    LocationContent,
    MediaContent,
    Selection,
    StatusUpdateEvent,
    StructuredContent,
    TextContent,
    UnrecognizedContent,
)
from wa_ingest.schemas import (
    ConversationRecord,
    InboundMessage,
    PlatformError,
    StatusRecord,
    WebhookChange,
    WebhookContact,
    WebhookEntry,
    WebhookNotification,
    WebhookValue,
)
from wa_ingest.utils import epoch_to_iso

logger = logging.getLogger(__name__)

MESSAGES_FIELD = "messages"


class InvalidNotificationError(Exception):
    """The notification as a whole failed shape validation."""


class NormalizationError(Exception):
    """A single item inside the notification could not be normalized."""


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


# =============================================================================
# Content extraction, one function per message kind
# =============================================================================

def _text(raw: dict) -> TextContent:
    return TextContent(body=(raw.get("text") or {}).get("body"))


def _media(kind: str, with_caption: bool, with_filename: bool = False) -> Callable[[dict], MediaContent]:
    def extract(raw: dict) -> MediaContent:
        media = raw.get(kind) or {}
        return MediaContent(
            media_id=media.get("id"),
            mime_type=media.get("mime_type"),
            caption=media.get("caption") if with_caption else None,
            filename=media.get("filename") if with_filename else None,
        )
    return extract


def _location(raw: dict) -> LocationContent:
    location = raw.get("location") or {}
    return LocationContent(
        latitude=location.get("latitude"),
        longitude=location.get("longitude"),
        name=location.get("name"),
        address=location.get("address"),
    )


def _interactive(raw: dict) -> StructuredContent:
    interactive = raw.get("interactive") or {}
    reply = interactive.get(interactive.get("type") or "")
    if interactive.get("type") in ("button_reply", "list_reply") and reply:
        return StructuredContent(data=_dumps(reply))
    return StructuredContent(data=_dumps(interactive))


def _button(raw: dict) -> TextContent:
    return TextContent(body=(raw.get("button") or {}).get("text"))


def _contacts(raw: dict) -> StructuredContent:
    return StructuredContent(data=_dumps(raw.get("contacts") or []))


def _reaction(raw: dict) -> StructuredContent:
    return StructuredContent(data=_dumps(raw.get("reaction") or {}))


def _system(raw: dict) -> TextContent:
    return TextContent(body=(raw.get("system") or {}).get("body"))


CONTENT_EXTRACTORS: Dict[str, Callable[[dict], Any]] = {
    "text": _text,
    "image": _media("image", with_caption=True),
    "video": _media("video", with_caption=True),
    "audio": _media("audio", with_caption=False),
    "sticker": _media("sticker", with_caption=False),
    "document": _media("document", with_caption=True, with_filename=True),
    "location": _location,
    "interactive": _interactive,
    "button": _button,
    "contacts": _contacts,
    "reaction": _reaction,
    "system": _system,
}


def extract_content(kind: str, raw: dict):
    """
    Select the content variant for a message kind.

    Kinds without an extractor are kept as UnrecognizedContent holding the
    whole inbound record, so nothing is lost until the schema models them.
    """
    extractor = CONTENT_EXTRACTORS.get(kind)
    if extractor is None:
        return UnrecognizedContent(raw_snapshot=_dumps(raw))
    return extractor(raw)


def extract_selection(raw: dict) -> Optional[Selection]:
    """Button/list selection of an interactive message, if recognized."""
    if raw.get("type") != "interactive":
        return None
    interactive = raw.get("interactive") or {}
    selection_type = interactive.get("type")
    if selection_type not in ("button_reply", "list_reply"):
        return None
    reply = interactive.get(selection_type) or {}
    if not reply.get("id") or not reply.get("title"):
        return None
    return Selection(
        selection_type=selection_type,
        selection_id=str(reply["id"]),
        title=reply["title"],
        description=reply.get("description"),
    )


# =============================================================================
# Item normalization
# =============================================================================

def normalize_message(raw: Any, profile_names: Dict[str, str]) -> IncomingMessageEvent:
    if not isinstance(raw, dict):
        raise NormalizationError("message record is not an object")
    try:
        envelope = InboundMessage.model_validate(raw)
        timestamp = epoch_to_iso(envelope.timestamp)
        content = extract_content(envelope.type, raw)
        selection = extract_selection(raw)
    except (ValidationError, ValueError) as e:
        raise NormalizationError(f"invalid message {raw.get('id')!r}: {e}") from e

    return IncomingMessageEvent(
        wa_message_id=envelope.id,
        from_address=envelope.from_address,
        profile_name=profile_names.get(envelope.from_address),
        kind=envelope.type,
        content=content,
        timestamp=timestamp,
        reply_to_message_id=(envelope.context or {}).get("id"),
        selection=selection,
    )


def _conversation_window(raw: Any, status_id: str) -> Optional[ConversationWindow]:
    """Conversation block of a status; None (and logged) when unusable."""
    try:
        record = ConversationRecord.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"Ignoring malformed conversation on status {status_id!r}: {e}")
        return None

    expires_at = None
    if record.expiration_timestamp is not None:
        try:
            expires_at = epoch_to_iso(record.expiration_timestamp)
        except ValueError as e:
            logger.warning(f"Ignoring expiration of conversation {record.id}: {e}")

    return ConversationWindow(
        wa_conversation_id=record.id,
        origin_type=record.origin.type,
        expires_at=expires_at,
    )


def _first_error(raw_errors: List[Any], status_id: str) -> Optional[PlatformError]:
    for raw in raw_errors:
        try:
            return PlatformError.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed error on status {status_id!r}: {e}")
    return None


def normalize_status(raw: Any) -> StatusUpdateEvent:
    """
    Status callback to event. Only id, status and timestamp are load-bearing;
    a broken conversation or errors block is dropped, never the status.
    """
    try:
        record = StatusRecord.model_validate(raw)
        timestamp = epoch_to_iso(record.timestamp)
    except (ValidationError, ValueError) as e:
        status_id = raw.get("id") if isinstance(raw, dict) else None
        raise NormalizationError(f"invalid status {status_id!r}: {e}") from e

    conversation = None
    if record.conversation is not None:
        conversation = _conversation_window(record.conversation, record.id)

    first_error = _first_error(record.errors, record.id)
    return StatusUpdateEvent(
        wa_message_id=record.id,
        status=record.status,
        timestamp=timestamp,
        recipient_id=record.recipient_id,
        error_code=first_error.code if first_error else None,
        error_message=first_error.message if first_error else None,
        conversation=conversation,
    )


def normalize_error(raw: Any) -> DeliveryErrorEvent:
    try:
        error = PlatformError.model_validate(raw)
    except ValidationError as e:
        raise NormalizationError(f"invalid error record: {e}") from e
    return DeliveryErrorEvent(
        code=error.code,
        title=error.title,
        message=error.message,
        details=error.details,
    )


def _profile_names(contacts: List[Any]) -> Dict[str, str]:
    """Map wa_id -> profile name; first non-empty name for an address wins."""
    names: Dict[str, str] = {}
    for raw in contacts:
        try:
            contact = WebhookContact.model_validate(raw)
        except ValidationError:
            logger.warning("Skipping malformed contact record in webhook value")
            continue
        if contact.name and contact.wa_id not in names:
            names[contact.wa_id] = contact.name
    return names


def _normalize_value(value: WebhookValue) -> List[Event]:
    events: List[Event] = []
    names = _profile_names(value.contacts)

    for raw in value.messages:
        try:
            events.append(normalize_message(raw, names))
        except NormalizationError as e:
            logger.error(f"Skipping message: {e}")

    for raw in value.statuses:
        try:
            events.append(normalize_status(raw))
        except NormalizationError as e:
            logger.error(f"Skipping status: {e}")

    for raw in value.errors:
        try:
            events.append(normalize_error(raw))
        except NormalizationError as e:
            logger.error(f"Skipping error record: {e}")

    return events


# =============================================================================
# Entry point
# =============================================================================

def normalize(payload: Any) -> List[Event]:
    """
    Fan a webhook notification out into internal events, in arrival order.

    Args:
        payload: Parsed JSON body of the webhook call

    Returns:
        Events for every message, status and error across all entries

    Raises:
        InvalidNotificationError: wrong top-level object tag or no entry list
    """
    if not isinstance(payload, dict):
        raise InvalidNotificationError("notification must be a JSON object")
    try:
        notification = WebhookNotification.model_validate(payload)
    except ValidationError as e:
        raise InvalidNotificationError(str(e)) from e

    events: List[Event] = []
    for index, raw_entry in enumerate(notification.entry):
        try:
            entry = WebhookEntry.model_validate(raw_entry)
        except ValidationError as e:
            logger.error(f"Skipping malformed entry #{index}: {e}")
            continue

        for raw_change in entry.changes:
            try:
                change = WebhookChange.model_validate(raw_change)
            except ValidationError as e:
                logger.error(f"Skipping malformed change in entry {entry.id}: {e}")
                continue

            if change.field != MESSAGES_FIELD:
                logger.debug(f"Ignoring change field: {change.field}")
                continue

            try:
                value = WebhookValue.model_validate(change.value)
            except ValidationError as e:
                logger.error(f"Skipping malformed change value in entry {entry.id}: {e}")
                continue

            change_events = _normalize_value(value)
            phone = (value.metadata or {}).get("display_phone_number")
            logger.debug(f"Change for business number {phone}: {len(change_events)} events")
            events.extend(change_events)

    logger.info(f"Normalized notification into {len(events)} events")
    return events
