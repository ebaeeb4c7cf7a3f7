"""
Pydantic schemas for webhook payloads and API responses.

This module contains:
- WhatsApp Cloud API webhook models (envelope, messages, statuses, errors)
- Response models for the read API
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, TypeAdapter, field_validator

from whatsapp_inbound.utils import MAX_UNIX_TIMESTAMP


def _check_unix_timestamp(v: str) -> str:
    """Unix seconds as a digit string, within the range datetime can represent."""
    if not v.isdigit():
        raise ValueError("timestamp must be a Unix timestamp in seconds")
    if int(v) > MAX_UNIX_TIMESTAMP:
        raise ValueError("timestamp out of range")
    return v


# =============================================================================
# Webhook Envelope Models
# =============================================================================

class WebhookError(BaseModel):
    """Error object reported by the platform, either per value or per status."""
    code: int
    title: Optional[str] = None
    message: Optional[str] = None
    error_data: Optional[dict[str, Any]] = None


class WebhookMetadata(BaseModel):
    """Business phone number the change belongs to."""
    display_phone_number: Optional[str] = None
    phone_number_id: str = Field(..., min_length=1)


class ContactProfile(BaseModel):
    name: Optional[str] = None


class WebhookContact(BaseModel):
    """Sender profile shipped next to inbound messages."""
    wa_id: str
    profile: ContactProfile = Field(default_factory=ContactProfile)


class WebhookValue(BaseModel):
    """
    Value of one change.

    messages, statuses, contacts and errors are kept as raw items here and
    validated one by one by the parser, so that one malformed item does not
    drop its siblings. The same holds for entries and changes.
    """
    messaging_product: Optional[str] = None
    metadata: WebhookMetadata
    contacts: list[Any] = Field(default_factory=list)
    messages: list[Any] = Field(default_factory=list)
    statuses: list[Any] = Field(default_factory=list)
    errors: list[Any] = Field(default_factory=list)


class WebhookChange(BaseModel):
    field: Optional[str] = None
    value: dict[str, Any]


class WebhookEntry(BaseModel):
    id: str  # WhatsApp Business Account ID
    changes: list[Any] = Field(default_factory=list)


class WebhookPayload(BaseModel):
    object: str
    entry: list[Any] = Field(default_factory=list)


# =============================================================================
# Inbound Message Content Models
# =============================================================================

class MediaContent(BaseModel):
    """Media reference shared by image, audio, video, sticker and document."""
    id: str
    mime_type: str = "application/octet-stream"
    sha256: Optional[str] = None
    caption: Optional[str] = None


class DocumentContent(MediaContent):
    filename: Optional[str] = None


class TextContent(BaseModel):
    body: str


class LocationContent(BaseModel):
    latitude: float
    longitude: float
    name: Optional[str] = None
    address: Optional[str] = None


class ReplyContent(BaseModel):
    id: str
    title: str
    description: Optional[str] = None


class InteractiveContent(BaseModel):
    type: Optional[str] = None
    button_reply: Optional[ReplyContent] = None
    list_reply: Optional[ReplyContent] = None


class ButtonContent(BaseModel):
    payload: Optional[str] = None
    text: str


class ReactionContent(BaseModel):
    message_id: str
    emoji: Optional[str] = None  # Absent when a reaction is removed


class MessageContext(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: Optional[str] = Field(None, alias="from")
    id: Optional[str] = None


# =============================================================================
# Inbound Message Models (tagged by "type")
# =============================================================================

class BaseInboundMessage(BaseModel):
    """
    Fields common to every inbound message.

    Subclasses narrow `type` and add their content block.
    """
    model_config = ConfigDict(populate_by_name=True)

    from_: str = Field(..., alias="from", min_length=1)
    id: str = Field(..., min_length=1)
    timestamp: str
    type: str
    context: Optional[MessageContext] = None
    referral: Optional[dict[str, Any]] = None

    @field_validator("from_")
    @classmethod
    def validate_wa_id(cls, v: str) -> str:
        """Sender identity must be digits only (provider format)."""
        if not v.isdigit():
            raise ValueError("from must contain digits only")
        return v

    @field_validator("timestamp")
    @classmethod
    def validate_unix_timestamp(cls, v: str) -> str:
        return _check_unix_timestamp(v)

    def display_body(self) -> Optional[str]:
        """Human readable body for this content type, None if there is none."""
        return None

    def media(self) -> Optional[MediaContent]:
        return None


class TextMessage(BaseInboundMessage):
    type: Literal["text"]
    text: TextContent

    def display_body(self) -> Optional[str]:
        return self.text.body


class _MediaMessage(BaseInboundMessage):
    def media(self) -> Optional[MediaContent]:
        return getattr(self, self.type, None)


class ImageMessage(_MediaMessage):
    type: Literal["image"]
    image: MediaContent


class DocumentMessage(_MediaMessage):
    type: Literal["document"]
    document: DocumentContent


class AudioMessage(_MediaMessage):
    type: Literal["audio"]
    audio: MediaContent


class VideoMessage(_MediaMessage):
    type: Literal["video"]
    video: MediaContent


class StickerMessage(_MediaMessage):
    type: Literal["sticker"]
    sticker: MediaContent


class LocationMessage(BaseInboundMessage):
    type: Literal["location"]
    location: LocationContent

    def display_body(self) -> Optional[str]:
        loc = self.location
        label = loc.name or loc.address or f"{loc.latitude}, {loc.longitude}"
        return f"📍 {label}"


class ContactsMessage(BaseInboundMessage):
    type: Literal["contacts"]
    contacts: list[dict[str, Any]] = Field(default_factory=list)


class InteractiveMessage(BaseInboundMessage):
    type: Literal["interactive"]
    interactive: InteractiveContent

    def display_body(self) -> Optional[str]:
        reply = self.interactive.button_reply or self.interactive.list_reply
        return reply.title if reply else None


class ButtonMessage(BaseInboundMessage):
    type: Literal["button"]
    button: ButtonContent

    def display_body(self) -> Optional[str]:
        return self.button.text


class ReactionMessage(BaseInboundMessage):
    type: Literal["reaction"]
    reaction: ReactionContent

    def display_body(self) -> Optional[str]:
        return self.reaction.emoji


class UnsupportedMessage(BaseInboundMessage):
    """order, system, unknown and any type this service does not model."""
    errors: list[WebhookError] = Field(default_factory=list)


_TAGGED_MESSAGE_TYPES = {
    "text",
    "image",
    "document",
    "audio",
    "video",
    "sticker",
    "location",
    "contacts",
    "interactive",
    "button",
    "reaction",
}


def _message_discriminator(value: Any) -> str:
    if isinstance(value, dict):
        message_type = value.get("type")
    else:
        message_type = getattr(value, "type", None)
    return message_type if message_type in _TAGGED_MESSAGE_TYPES else "unsupported"


InboundMessage = Annotated[
    Union[
        Annotated[TextMessage, Tag("text")],
        Annotated[ImageMessage, Tag("image")],
        Annotated[DocumentMessage, Tag("document")],
        Annotated[AudioMessage, Tag("audio")],
        Annotated[VideoMessage, Tag("video")],
        Annotated[StickerMessage, Tag("sticker")],
        Annotated[LocationMessage, Tag("location")],
        Annotated[ContactsMessage, Tag("contacts")],
        Annotated[InteractiveMessage, Tag("interactive")],
        Annotated[ButtonMessage, Tag("button")],
        Annotated[ReactionMessage, Tag("reaction")],
        Annotated[UnsupportedMessage, Tag("unsupported")],
    ],
    Discriminator(_message_discriminator),
]

inbound_message_adapter = TypeAdapter(InboundMessage)


# =============================================================================
# Status Update Model
# =============================================================================

class StatusUpdate(BaseModel):
    """Delivery status callback for a previously sent message."""
    id: str = Field(..., min_length=1)  # wamid
    status: Literal["sent", "delivered", "read", "failed"]
    timestamp: str
    recipient_id: Optional[str] = None
    conversation: Optional[dict[str, Any]] = None
    pricing: Optional[dict[str, Any]] = None
    errors: list[WebhookError] = Field(default_factory=list)

    @field_validator("timestamp")
    @classmethod
    def validate_unix_timestamp(cls, v: str) -> str:
        return _check_unix_timestamp(v)


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookAckResponse(BaseModel):
    """Acknowledgement returned to the platform once the payload is accepted."""
    status: str = Field(default="received", description="Operation status")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class ConversationResponse(BaseModel):
    id: str
    account_id: str
    wa_id: str
    phone_number: str
    profile_name: Optional[str] = None
    linked_candidate_id: Optional[str] = None
    is_unread: bool
    unread_count: int
    last_message_at: Optional[str] = None
    last_message_preview: Optional[str] = None
    last_customer_message_at: Optional[str] = None

    model_config = {"from_attributes": True}


class ConversationsListResponse(BaseModel):
    data: list[ConversationResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    limit: int = Field(..., ge=1, le=100)
    offset: int = Field(..., ge=0)


class MediaResponse(BaseModel):
    id: str
    wa_media_id: Optional[str] = None
    mime_type: str
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    storage_url: Optional[str] = None
    caption: Optional[str] = None

    model_config = {"from_attributes": True}


class MessageResponse(BaseModel):
    """
    Response model for a single message in the messages list.
    Maps database fields to API response format.
    """
    id: str
    conversation_id: str
    wamid: Optional[str] = None
    direction: str
    message_type: str
    status: str
    body: Optional[str] = None
    sent_at: Optional[str] = None
    delivered_at: Optional[str] = None
    read_at: Optional[str] = None
    failed_at: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    created_at: str
    media: Optional[MediaResponse] = None

    model_config = {"from_attributes": True}


class MessagesListResponse(BaseModel):
    """
    Response model for GET /messages endpoint with pagination.

    total counts all messages matching filters, ignoring limit/offset.
    """
    data: list[MessageResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    limit: int = Field(..., ge=1, le=100)
    offset: int = Field(..., ge=0)


class StatsResponse(BaseModel):
    """Counts over everything the webhook has ingested."""
    total_messages: int = Field(..., ge=0)
    messages_by_status: dict[str, int] = Field(default_factory=dict)
    messages_by_type: dict[str, int] = Field(default_factory=dict)
    total_conversations: int = Field(..., ge=0)
    unread_conversations: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
