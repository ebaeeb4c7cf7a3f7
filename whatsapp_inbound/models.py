"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic webhook and response schemas, see schemas.py.

Uniqueness is enforced at the table level so that concurrent duplicate
webhook deliveries cannot create two rows for the same provider identity:
- whatsapp_accounts.phone_number_id
- whatsapp_conversations (account_id, wa_id)
- whatsapp_messages.wamid
"""

import uuid

from sqlalchemy import JSON, Boolean, Column, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from whatsapp_inbound.storage import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class WhatsAppAccount(Base):
    """
    One connected WhatsApp Business phone identity.

    Table: whatsapp_accounts
    Created lazily on the first webhook for an unseen phone_number_id.
    """
    __tablename__ = "whatsapp_accounts"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String, nullable=False, default="Primary")
    waba_id = Column(String, nullable=False)
    phone_number_id = Column(String, nullable=False, unique=True, index=True)
    phone_number = Column(String, nullable=False, default="")  # Display number, empty until configured
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(String, nullable=False)  # Server time ISO-8601


class Candidate(Base):
    """
    Internal candidate directory entry, read only by the webhook processor.

    Table: candidates
    """
    __tablename__ = "candidates"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String, nullable=True)
    phone = Column(String, nullable=True, index=True)


class WhatsAppConversation(Base):
    """
    Ongoing exchange with one external phone number, scoped to one account.

    Table: whatsapp_conversations
    """
    __tablename__ = "whatsapp_conversations"
    __table_args__ = (
        UniqueConstraint("account_id", "wa_id", name="uq_conversation_account_wa_id"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    account_id = Column(String(36), ForeignKey("whatsapp_accounts.id"), nullable=False, index=True)
    wa_id = Column(String, nullable=False)  # Digits only, provider format
    phone_number = Column(String, nullable=False)  # "+" prefixed
    profile_name = Column(String, nullable=True)
    linked_candidate_id = Column(String(36), ForeignKey("candidates.id"), nullable=True)
    is_unread = Column(Boolean, nullable=False, default=True)
    unread_count = Column(Integer, nullable=False, default=0)
    last_message_at = Column(String, nullable=True, index=True)
    last_message_preview = Column(Text, nullable=True)
    last_customer_message_at = Column(String, nullable=True)
    created_at = Column(String, nullable=False)


class WhatsAppMessage(Base):
    """
    One inbound or outbound message.

    Table: whatsapp_messages
    wamid (provider message ID) is the idempotency key.
    """
    __tablename__ = "whatsapp_messages"

    id = Column(String(36), primary_key=True, default=_new_id)
    conversation_id = Column(
        String(36), ForeignKey("whatsapp_conversations.id"), nullable=False, index=True
    )
    wamid = Column(String, nullable=True, unique=True, index=True)
    direction = Column(String, nullable=False)  # inbound | outbound
    message_type = Column(String, nullable=False, default="text")
    status = Column(String, nullable=False, default="pending", index=True)
    body = Column(Text, nullable=True)
    sent_at = Column(String, nullable=True)
    delivered_at = Column(String, nullable=True)
    read_at = Column(String, nullable=True)
    failed_at = Column(String, nullable=True)
    error_code = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    raw_payload = Column(JSON, nullable=True)
    created_at = Column(String, nullable=False, index=True)

    media = relationship("WhatsAppMedia", uselist=False, lazy="selectin")


class WhatsAppMedia(Base):
    """
    Attachment of a non-text message, relocated to durable storage.

    Table: whatsapp_media
    storage_path/storage_url stay NULL when the upload failed.
    """
    __tablename__ = "whatsapp_media"

    id = Column(String(36), primary_key=True, default=_new_id)
    message_id = Column(String(36), ForeignKey("whatsapp_messages.id"), nullable=False, index=True)
    wa_media_id = Column(String, nullable=True, index=True)
    mime_type = Column(String, nullable=False)
    file_name = Column(String, nullable=True)
    file_size = Column(Integer, nullable=True)
    sha256 = Column(String, nullable=True)
    storage_path = Column(String, nullable=True)
    storage_url = Column(String, nullable=True)
    caption = Column(Text, nullable=True)
    created_at = Column(String, nullable=False)
