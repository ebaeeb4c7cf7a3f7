"""
Processing of parsed webhook events.

Every event is isolated: a failure while handling one message or status is
logged and counted, and the remaining events of the payload are still
processed. Nothing here raises back to the HTTP layer.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from whatsapp_inbound import storage
from whatsapp_inbound.logging_utils import log_context, mask_phone
from whatsapp_inbound.media import MediaRelocator
from whatsapp_inbound.metrics import record_event_outcome
from whatsapp_inbound.schemas import BaseInboundMessage, StatusUpdate
from whatsapp_inbound.utils import map_message_type, phone_match_variants, unix_to_iso
from whatsapp_inbound.webhook_parser import (
    InboundMessageEvent,
    ProcessingErrorEvent,
    StatusUpdateEvent,
    WebhookEvent,
    parse_webhook_payload,
)

logger = logging.getLogger(__name__)

STATUS_TIMESTAMP_FIELDS = {
    "sent": "sent_at",
    "delivered": "delivered_at",
    "read": "read_at",
    "failed": "failed_at",
}


@dataclass
class ProcessingSummary:
    """Per-call tally of event outcomes, logged once the payload is done."""
    messages_created: int = 0
    messages_duplicate: int = 0
    statuses_updated: int = 0
    statuses_orphaned: int = 0
    errors_reported: int = 0
    events_failed: int = 0


# =============================================================================
# Resolvers
# =============================================================================

def resolve_account_id(db: Session, phone_number_id: str, waba_id: str, cache: dict) -> Optional[str]:
    """Account ID for a phone_number_id, memoised for the duration of one call."""
    if phone_number_id in cache:
        return cache[phone_number_id]

    account = storage.get_or_create_account(db, phone_number_id, waba_id)
    if account is None:
        logger.error(f"No account found for phone_number_id: {phone_number_id}")
        return None

    cache[phone_number_id] = account.id
    return account.id


def resolve_conversation(db: Session, account_id: str, wa_id: str, profile_name: Optional[str]):
    """
    Find or create the conversation with `wa_id` on the given account.

    A new conversation is linked to the first candidate whose phone matches
    one of the spellings from phone_match_variants(). The match is a
    heuristic, so a missing link is a normal outcome.
    """
    existing = storage.get_conversation(db, account_id, wa_id)
    if existing:
        if profile_name and profile_name != existing.profile_name:
            storage.update_conversation_profile_name(db, existing, profile_name)
        return existing

    linked_candidate_id = None
    try:
        candidate = storage.find_candidate_by_phone(db, phone_match_variants(wa_id))
        if candidate:
            linked_candidate_id = candidate.id
            logger.info(f"Linked conversation for {mask_phone(wa_id)} to candidate {candidate.id}")
    except Exception:
        db.rollback()
        logger.warning(f"Candidate lookup failed for {mask_phone(wa_id)}", exc_info=True)

    conversation, created = storage.create_conversation(
        db,
        account_id=account_id,
        wa_id=wa_id,
        phone_number=f"+{wa_id}",
        profile_name=profile_name,
        linked_candidate_id=linked_candidate_id,
    )
    if conversation is not None and not created:
        # Lost a first-contact race, still apply the profile name we saw
        if profile_name and profile_name != conversation.profile_name:
            storage.update_conversation_profile_name(db, conversation, profile_name)
    return conversation


# =============================================================================
# Message Ingestion
# =============================================================================

def extract_message_body(message: BaseInboundMessage) -> Optional[str]:
    """Display body of a message; a media caption takes precedence."""
    body = message.display_body()
    media = message.media()
    if media is not None and media.caption:
        body = media.caption
    return body


def ingest_inbound_message(
    db: Session,
    account_id: str,
    event: InboundMessageEvent,
    media_relocator: Optional[MediaRelocator] = None,
) -> str:
    """
    Store one inbound message.

    Returns:
        "created", "duplicate" or "failed"
    """
    message = event.message
    wa_id = message.from_

    if storage.get_message_by_wamid(db, message.id) is not None:
        logger.info(f"Message {message.id} already processed, skipping")
        return "duplicate"

    conversation = resolve_conversation(db, account_id, wa_id, event.profile_name)
    if conversation is None:
        logger.error(f"Failed to create conversation for {mask_phone(wa_id)}")
        return "failed"

    stored, is_duplicate = storage.create_inbound_message(
        db,
        conversation_id=conversation.id,
        wamid=message.id,
        message_type=map_message_type(message.type),
        body=extract_message_body(message),
        sent_at=unix_to_iso(message.timestamp),
        raw_payload=event.raw,
    )
    if is_duplicate:
        return "duplicate"
    if stored is None:
        return "failed"

    # The message row is committed; media is an enhancement on top of it
    if media_relocator is not None and message.media() is not None:
        media_relocator.relocate(db, stored.id, message)

    logger.info(f"Processed inbound message {message.id} from {mask_phone(wa_id)}")
    return "created"


# =============================================================================
# Status Updates
# =============================================================================

def build_status_updates(status: StatusUpdate) -> dict:
    """Column updates for a status callback."""
    updates = {
        "status": status.status,
        STATUS_TIMESTAMP_FIELDS[status.status]: unix_to_iso(status.timestamp),
    }
    if status.status == "failed" and status.errors:
        error = status.errors[0]
        updates["error_code"] = str(error.code)
        updates["error_message"] = error.message or error.title
    return updates


def apply_status_update(db: Session, status: StatusUpdate) -> str:
    """
    Apply a delivery status to the stored message with the same wamid.

    Monotonicity is not enforced: the latest callback wins and timestamps of
    skipped states stay unset. Statuses for unknown messages are ignored.

    Returns:
        "updated" or "orphaned"
    """
    updated = storage.update_message_status(db, status.id, build_status_updates(status))
    if updated == 0:
        logger.info(f"Status update for unknown message {status.id}: {status.status}")
        return "orphaned"

    logger.info(f"Updated message {status.id} to status: {status.status}")
    return "updated"


# =============================================================================
# Payload Processing
# =============================================================================

def process_webhook_payload(
    db: Session,
    payload: dict,
    media_relocator: Optional[MediaRelocator] = None,
) -> ProcessingSummary:
    """
    Process every event of a decoded webhook payload.

    The signature and `object` field are expected to be checked by the caller.
    """
    summary = ProcessingSummary()
    account_cache: dict[str, str] = {}

    for event in parse_webhook_payload(payload.get("entry") or []):
        with log_context(**_event_log_fields(event)):
            _process_event(db, event, summary, account_cache, media_relocator)

    logger.info("Webhook payload processed", extra=vars(summary))
    return summary


def _process_event(
    db: Session,
    event: WebhookEvent,
    summary: ProcessingSummary,
    account_cache: dict,
    media_relocator: Optional[MediaRelocator],
) -> None:
    if isinstance(event, ProcessingErrorEvent):
        summary.errors_reported += 1
        record_event_outcome("error", "logged")
        logger.error(f"Webhook error: {event.code} - {event.title}", extra={"details": str(event.details)})
        return

    try:
        account_id = resolve_account_id(db, event.phone_number_id, event.waba_id, account_cache)
        if account_id is None:
            summary.events_failed += 1
            record_event_outcome(_event_kind(event), "failed")
            return

        if isinstance(event, InboundMessageEvent):
            result = ingest_inbound_message(db, account_id, event, media_relocator)
            record_event_outcome("message", result)
            if result == "created":
                summary.messages_created += 1
            elif result == "duplicate":
                summary.messages_duplicate += 1
            else:
                summary.events_failed += 1

        elif isinstance(event, StatusUpdateEvent):
            result = apply_status_update(db, event.status)
            record_event_outcome("status", result)
            if result == "updated":
                summary.statuses_updated += 1
            else:
                summary.statuses_orphaned += 1

    except Exception:
        db.rollback()
        summary.events_failed += 1
        record_event_outcome(_event_kind(event), "failed")
        logger.exception(f"Failed to process {_event_kind(event)} event")


def _event_kind(event) -> str:
    return "message" if isinstance(event, InboundMessageEvent) else "status"


def _event_log_fields(event: WebhookEvent) -> dict:
    fields = {"phone_number_id": event.phone_number_id}
    if isinstance(event, InboundMessageEvent):
        fields["wamid"] = event.message.id
    elif isinstance(event, StatusUpdateEvent):
        fields["wamid"] = event.status.id
    return fields
