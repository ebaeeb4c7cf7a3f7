"""
Utility functions for the WhatsApp webhook service.
"""

import hmac
import hashlib
import logging
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="

# 9999-12-31T23:59:59Z, the last second datetime can represent
MAX_UNIX_TIMESTAMP = 253402300799

# Provider message type -> internal message_type tag
MESSAGE_TYPE_MAPPING = {
    "text": "text",
    "image": "image",
    "document": "document",
    "audio": "audio",
    "video": "video",
    "sticker": "sticker",
    "location": "location",
    "contacts": "contacts",
    "interactive": "interactive",
    "button": "interactive",
    "reaction": "reaction",
    "order": "unknown",
    "system": "unknown",
    "unknown": "unknown",
}

MIME_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "audio/ogg": "ogg",
    "audio/mpeg": "mp3",
    "audio/amr": "amr",
    "video/mp4": "mp4",
    "video/3gpp": "3gp",
    "application/pdf": "pdf",
    "application/vnd.ms-excel": "xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
    "application/msword": "doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "text/plain": "txt",
}


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """
    Verify the X-Hub-Signature-256 header of a webhook call.

    Args:
        body: Raw request body bytes, exactly as received
        signature: Header value, expected as "sha256=<hex>"
        secret: WhatsApp app secret

    Returns:
        True if signature is valid, False otherwise
    """
    if not secret:
        logger.error("WHATSAPP_APP_SECRET not configured, rejecting webhook")
        return False

    if not signature or not signature.startswith(SIGNATURE_PREFIX):
        logger.info("Webhook signature missing or malformed")
        return False

    logger.debug(f"Body length: {len(body)} bytes, signature: {signature[:15]}...")

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(
        SIGNATURE_PREFIX + expected_signature,
        signature
    )
    logger.info(f"Webhook signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def utc_now_iso() -> str:
    """Current server time as ISO-8601 UTC string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def unix_to_iso(timestamp: str) -> str:
    """Convert a provider Unix timestamp (seconds, as string) to ISO-8601 UTC."""
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def map_message_type(provider_type: Optional[str]) -> str:
    """Map a provider message type to the internal tag, never failing."""
    return MESSAGE_TYPE_MAPPING.get(provider_type or "", "unknown")


def extension_for_mime_type(mime_type: Optional[str]) -> str:
    """File extension for a MIME type, "bin" when unmapped."""
    if not mime_type:
        return "bin"
    # Strip parameters such as "; codecs=opus"
    base_type = mime_type.split(";")[0].strip().lower()
    return MIME_EXTENSIONS.get(base_type, "bin")


def phone_match_variants(wa_id: str) -> list[str]:
    """
    Phone number spellings used to auto-link a sender to a candidate.

    Only "+<digits>", "<digits>" and the Swiss national "0..." form are
    tried, so numbers of other countries only match when stored in
    international format.
    """
    return [f"+{wa_id}", wa_id, f"0{wa_id[2:]}"]
