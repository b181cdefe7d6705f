"""
Pydantic schemas for request/response validation.

This module contains:
- Webhook payload models for the inbound WhatsApp notification
- Request models for recording outbound sends
- Response models for API responses

Payload models are deliberately lenient (extra fields allowed, most fields
optional): the platform adds fields over time and one malformed item must
not fail the rest of the notification.
"""

from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Webhook Payload Models
# =============================================================================

WHATSAPP_OBJECT = "whatsapp_business_account"


class WebhookNotification(BaseModel):
    """Top-level envelope: {object, entry: [...]}."""
    model_config = ConfigDict(extra="allow")

    object: str = Field(..., description="Always 'whatsapp_business_account'")
    entry: List[Any] = Field(..., description="Webhook entries")

    @field_validator("object")
    @classmethod
    def validate_object(cls, v: str) -> str:
        if v != WHATSAPP_OBJECT:
            raise ValueError(f"object must be '{WHATSAPP_OBJECT}'")
        return v


class WebhookEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    changes: List[Any] = Field(default_factory=list)


class WebhookChange(BaseModel):
    model_config = ConfigDict(extra="allow")

    field: str
    value: dict


class WebhookValue(BaseModel):
    """Body of a 'messages' change; every list is optional."""
    model_config = ConfigDict(extra="allow")

    messaging_product: Optional[str] = None
    metadata: Optional[dict] = None
    contacts: List[Any] = Field(default_factory=list)
    messages: List[Any] = Field(default_factory=list)
    statuses: List[Any] = Field(default_factory=list)
    errors: List[Any] = Field(default_factory=list)

    @field_validator("contacts", "messages", "statuses", "errors", mode="before")
    @classmethod
    def none_as_empty(cls, v):
        return [] if v is None else v


class WebhookContact(BaseModel):
    model_config = ConfigDict(extra="allow")

    wa_id: str
    profile: Optional[dict] = None

    @property
    def name(self) -> Optional[str]:
        if not self.profile:
            return None
        return self.profile.get("name")


class InboundMessage(BaseModel):
    """
    A single inbound message record.

    Only the envelope is typed here; the kind-specific object (text, image,
    location, ...) is read from the raw record by the normalizer.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    from_address: str = Field(..., alias="from", min_length=1)
    id: str = Field(..., min_length=1)
    timestamp: Union[str, int]
    type: str = "unknown"
    context: Optional[dict] = None


class PlatformError(BaseModel):
    model_config = ConfigDict(extra="allow")

    code: Optional[int] = None
    title: Optional[str] = None
    message: Optional[str] = None
    error_data: Optional[dict] = None

    @field_validator("code", mode="before")
    @classmethod
    def unparsable_code_as_none(cls, v):
        # A bad code must not cost the status carrying it
        if v is None or isinstance(v, bool):
            return None
        try:
            return int(v)
        except (TypeError, ValueError):
            return None

    @field_validator("error_data", mode="before")
    @classmethod
    def non_object_data_as_none(cls, v):
        return v if isinstance(v, dict) else None

    @property
    def details(self) -> Optional[str]:
        if not self.error_data:
            return None
        return self.error_data.get("details")


class ConversationOrigin(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str


class ConversationRecord(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1)
    origin: ConversationOrigin
    expiration_timestamp: Optional[Union[str, int]] = None


class StatusRecord(BaseModel):
    """
    A delivery-status callback for a previously sent message.

    Only id, status and timestamp are required. conversation and errors stay
    raw here and are validated one by one in the normalizer, so a broken
    sub-object is dropped without dropping the status.
    """
    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1)
    status: str = Field(..., min_length=1)
    timestamp: Union[str, int]
    recipient_id: Optional[str] = None
    conversation: Optional[Any] = None
    pricing: Optional[Any] = None
    errors: List[Any] = Field(default_factory=list)

    @field_validator("errors", mode="before")
    @classmethod
    def non_list_as_empty(cls, v):
        return v if isinstance(v, list) else []


# =============================================================================
# Request Models
# =============================================================================

class OutgoingMessageRequest(BaseModel):
    """Record of a message sent to a contact by some other component."""
    wa_message_id: str = Field(..., min_length=1, description="Platform-assigned message id")
    to: str = Field(..., min_length=1, description="Recipient wa_id")
    type: str = Field(default="text", min_length=1, description="Message kind")
    content: Optional[str] = Field(None, description="Text body or serialized structure")
    media_id: Optional[str] = None
    media_mime_type: Optional[str] = None
    caption: Optional[str] = None
    filename: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_name: Optional[str] = None
    location_address: Optional[str] = None
    reply_to: Optional[str] = Field(None, description="wa_message_id being replied to")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "wa_message_id": "wamid.OUT1",
                    "to": "15551234567",
                    "type": "text",
                    "content": "Your order has shipped"
                }
            ]
        }
    }


# =============================================================================
# Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response model for webhook acknowledgment."""
    status: str = Field(default="ok", description="Operation status")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class ContactResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    wa_id: str
    name: Optional[str] = None
    phone_number: Optional[str] = None
    first_seen_at: str
    last_message_at: str


class ContactsListResponse(BaseModel):
    data: List[ContactResponse] = Field(default_factory=list)
    limit: int = Field(..., ge=1, le=100)
    offset: int = Field(..., ge=0)


class MessageResponse(BaseModel):
    """
    A stored message joined with its contact.
    Only the content group matching the message kind is non-null.
    """
    model_config = ConfigDict(from_attributes=True)

    wa_message_id: str
    contact_wa_id: str
    contact_name: Optional[str] = None
    direction: Literal["incoming", "outgoing"]
    type: str
    content: Optional[str] = None
    media_id: Optional[str] = None
    media_mime_type: Optional[str] = None
    media_filename: Optional[str] = None
    caption: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_name: Optional[str] = None
    location_address: Optional[str] = None
    reply_to_message_id: Optional[str] = None
    status: str
    timestamp: str
    created_at: str


class SelectionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    selection_type: str
    selection_id: str
    title: str
    description: Optional[str] = None


class StatusEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: str
    timestamp: str
    error_code: Optional[int] = None
    error_message: Optional[str] = None


class MessageDetailResponse(MessageResponse):
    selection: Optional[SelectionResponse] = None
    status_history: List[StatusEventResponse] = Field(default_factory=list)


class MessagesListResponse(BaseModel):
    """
    Response model for GET /data/messages with pagination.

    total is the count matching the filters, ignoring limit/offset.
    """
    data: List[MessageResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    limit: int = Field(..., ge=1, le=100)
    offset: int = Field(..., ge=0)


class ConversationHistoryResponse(BaseModel):
    wa_id: str
    data: List[MessageResponse] = Field(default_factory=list)


class OutgoingMessageResponse(BaseModel):
    duplicate: bool
    message: MessageResponse


class TypeCount(BaseModel):
    type: str
    count: int = Field(..., ge=0)


class StatsResponse(BaseModel):
    """Aggregate counts over contacts and messages."""
    total_contacts: int = Field(..., ge=0)
    total_messages: int = Field(..., ge=0)
    incoming_messages: int = Field(..., ge=0)
    outgoing_messages: int = Field(..., ge=0)
    messages_by_type: List[TypeCount] = Field(
        default_factory=list,
        description="Message counts per kind, most frequent first"
    )
