"""Payload builders and signing helper shared by the test modules."""

import hashlib
import hmac
import os


def compute_signature(body: str, secret: str = None) -> str:
    """Compute the X-Hub-Signature-256 header value for a request body."""
    digest = hmac.new(
        (secret or os.environ["WHATSAPP_APP_SECRET"]).encode("utf-8"),
        body.encode("utf-8"),
        hashlib.sha256
    ).hexdigest()
    return f"sha256={digest}"


def text_message(wamid="wamid.AAA", wa_id="41791234567", body="Hallo", timestamp="1700000000") -> dict:
    return {
        "from": wa_id,
        "id": wamid,
        "timestamp": timestamp,
        "type": "text",
        "text": {"body": body},
    }


def media_message(
    media_type="image",
    wamid="wamid.IMG",
    media_id="media-1",
    wa_id="41791234567",
    mime_type="image/jpeg",
    caption=None,
    filename=None,
) -> dict:
    content = {"id": media_id, "mime_type": mime_type, "sha256": "payload-sha"}
    if caption is not None:
        content["caption"] = caption
    if filename is not None:
        content["filename"] = filename
    return {
        "from": wa_id,
        "id": wamid,
        "timestamp": "1700000000",
        "type": media_type,
        media_type: content,
    }


def status_update(wamid="wamid.AAA", status="read", timestamp="1700000100", errors=None) -> dict:
    update = {
        "id": wamid,
        "status": status,
        "timestamp": timestamp,
        "recipient_id": "41791234567",
    }
    if errors is not None:
        update["errors"] = errors
    return update


def contact(wa_id="41791234567", name="Anna Muster") -> dict:
    return {"profile": {"name": name}, "wa_id": wa_id}
