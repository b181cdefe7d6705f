"""
Internal event types produced by the normalizer.

Message content is a tagged variant: the ``variant`` field selects which
payload shape is present. The message *kind* (text, image, reaction, ...)
is carried separately on the event, since several kinds share one variant.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class TextContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    variant: Literal["text"] = "text"
    body: Optional[str] = None


class MediaContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    variant: Literal["media"] = "media"
    media_id: Optional[str] = None
    mime_type: Optional[str] = None
    filename: Optional[str] = None
    caption: Optional[str] = None


class LocationContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    variant: Literal["location"] = "location"
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    name: Optional[str] = None
    address: Optional[str] = None


class StructuredContent(BaseModel):
    """Composite kinds (interactive, contacts, reaction) serialized as JSON."""
    model_config = ConfigDict(frozen=True)

    variant: Literal["structured"] = "structured"
    data: str


class UnrecognizedContent(BaseModel):
    """Kinds the schema does not model yet; the whole inbound record is kept."""
    model_config = ConfigDict(frozen=True)

    variant: Literal["unrecognized"] = "unrecognized"
    raw_snapshot: str


MessageContent = Annotated[
    Union[TextContent, MediaContent, LocationContent, StructuredContent, UnrecognizedContent],
    Field(discriminator="variant"),
]


class Selection(BaseModel):
    """A button or list option picked by the user."""
    model_config = ConfigDict(frozen=True)

    selection_type: Literal["button_reply", "list_reply"]
    selection_id: str
    title: str
    description: Optional[str] = None


class OutgoingExtras(BaseModel):
    """Optional fields of an outbound send, beyond its text content."""
    media_id: Optional[str] = None
    media_mime_type: Optional[str] = None
    caption: Optional[str] = None
    filename: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_name: Optional[str] = None
    location_address: Optional[str] = None
    reply_to_message_id: Optional[str] = None


class IncomingMessageEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event: Literal["message"] = "message"
    wa_message_id: str
    from_address: str
    profile_name: Optional[str] = None
    kind: str
    content: MessageContent
    timestamp: str  # ISO-8601 UTC
    reply_to_message_id: Optional[str] = None
    selection: Optional[Selection] = None


class ConversationWindow(BaseModel):
    model_config = ConfigDict(frozen=True)

    wa_conversation_id: str
    origin_type: str
    expires_at: Optional[str] = None


class StatusUpdateEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event: Literal["status"] = "status"
    wa_message_id: str
    status: str
    timestamp: str  # ISO-8601 UTC
    recipient_id: Optional[str] = None
    error_code: Optional[int] = None
    error_message: Optional[str] = None
    conversation: Optional[ConversationWindow] = None


class DeliveryErrorEvent(BaseModel):
    """Platform-level error not tied to a specific message."""
    model_config = ConfigDict(frozen=True)

    event: Literal["error"] = "error"
    code: Optional[int] = None
    title: Optional[str] = None
    message: Optional[str] = None
    details: Optional[str] = None


Event = Union[IncomingMessageEvent, StatusUpdateEvent, DeliveryErrorEvent]
