"""
Flattens the WhatsApp webhook envelope into a list of typed events.

The envelope nests entries -> changes -> value{messages, statuses, errors}.
Each event keeps the phone_number_id and business account ID of the change
it came from. Malformed entries and changes are skipped; malformed messages
and statuses become ProcessingErrorEvent so siblings are still processed.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from pydantic import ValidationError

from whatsapp_inbound.schemas import (
    BaseInboundMessage,
    StatusUpdate,
    WebhookChange,
    WebhookContact,
    WebhookEntry,
    WebhookError,
    WebhookValue,
    inbound_message_adapter,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InboundMessageEvent:
    phone_number_id: str
    waba_id: str
    message: BaseInboundMessage
    raw: dict[str, Any]
    contact: Optional[WebhookContact] = None

    @property
    def profile_name(self) -> Optional[str]:
        if self.contact and self.contact.profile.name:
            return self.contact.profile.name
        return None


@dataclass(frozen=True)
class StatusUpdateEvent:
    phone_number_id: str
    waba_id: str
    status: StatusUpdate


@dataclass(frozen=True)
class ProcessingErrorEvent:
    """Platform-reported error, or an item of the payload that failed validation."""
    phone_number_id: Optional[str]
    waba_id: Optional[str]
    code: Optional[int]
    title: str
    details: dict[str, Any] = field(default_factory=dict)


WebhookEvent = Union[InboundMessageEvent, StatusUpdateEvent, ProcessingErrorEvent]


def _raw_id(raw: Any) -> Optional[str]:
    return raw.get("id") if isinstance(raw, dict) else None


def _parse_contacts(raw_contacts: list[Any]) -> dict[str, WebhookContact]:
    contacts: dict[str, WebhookContact] = {}
    for raw in raw_contacts:
        try:
            contact = WebhookContact.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Skipping malformed contact: {e.error_count()} validation errors")
            continue
        contacts.setdefault(contact.wa_id, contact)
    return contacts


def _parse_value(value: WebhookValue, waba_id: str) -> list[WebhookEvent]:
    phone_number_id = value.metadata.phone_number_id
    contacts = _parse_contacts(value.contacts)
    events: list[WebhookEvent] = []

    for raw_message in value.messages:
        try:
            message = inbound_message_adapter.validate_python(raw_message)
        except ValidationError as e:
            events.append(ProcessingErrorEvent(
                phone_number_id=phone_number_id,
                waba_id=waba_id,
                code=None,
                title="Malformed message",
                details={"id": _raw_id(raw_message), "errors": e.errors(include_url=False)},
            ))
            continue
        events.append(InboundMessageEvent(
            phone_number_id=phone_number_id,
            waba_id=waba_id,
            message=message,
            raw=raw_message,
            contact=contacts.get(message.from_),
        ))

    for raw_status in value.statuses:
        try:
            status = StatusUpdate.model_validate(raw_status)
        except ValidationError as e:
            events.append(ProcessingErrorEvent(
                phone_number_id=phone_number_id,
                waba_id=waba_id,
                code=None,
                title="Malformed status",
                details={"id": _raw_id(raw_status), "errors": e.errors(include_url=False)},
            ))
            continue
        events.append(StatusUpdateEvent(
            phone_number_id=phone_number_id,
            waba_id=waba_id,
            status=status,
        ))

    for raw_error in value.errors:
        try:
            error = WebhookError.model_validate(raw_error)
        except ValidationError:
            error = WebhookError(code=0, title="Unparseable error object")
        events.append(ProcessingErrorEvent(
            phone_number_id=phone_number_id,
            waba_id=waba_id,
            code=error.code,
            title=error.title or "",
            details={"message": error.message, "error_data": error.error_data},
        ))

    return events


def parse_webhook_payload(entries: list[Any]) -> list[WebhookEvent]:
    """
    Flatten the `entry` list of a webhook payload into ordered events.

    Order follows the payload: per change, messages first, then statuses,
    then errors.
    """
    events: list[WebhookEvent] = []

    for entry_index, raw_entry in enumerate(entries):
        try:
            entry = WebhookEntry.model_validate(raw_entry)
        except ValidationError as e:
            logger.warning(f"Skipping malformed entry #{entry_index}: {e.error_count()} validation errors")
            continue

        for change_index, raw_change in enumerate(entry.changes):
            try:
                change = WebhookChange.model_validate(raw_change)
                value = WebhookValue.model_validate(change.value)
            except ValidationError as e:
                logger.warning(
                    f"Skipping malformed change #{change_index} of entry {entry.id}: "
                    f"{e.error_count()} validation errors"
                )
                continue

            if change.field not in (None, "messages"):
                logger.info(f"Ignoring change for field '{change.field}' of entry {entry.id}")
                continue

            events.extend(_parse_value(value, entry.id))

    logger.debug(f"Parsed {len(events)} events from {len(entries)} entries")
    return events
