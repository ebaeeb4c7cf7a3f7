"""
Media relocation: WhatsApp Cloud API media download and S3 upload.

Provider media URLs are short-lived, so attachments are copied into our own
bucket right after the owning message is stored. Every step is best-effort:
a failure is logged and never affects the stored message.
"""

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Optional, Tuple

import boto3
import httpx
from sqlalchemy.orm import Session

from whatsapp_inbound.config import settings
from whatsapp_inbound.metrics import record_event_outcome, record_media_upload
from whatsapp_inbound.schemas import BaseInboundMessage, DocumentContent, MediaContent
from whatsapp_inbound.storage import create_media
from whatsapp_inbound.utils import extension_for_mime_type

logger = logging.getLogger(__name__)

STORAGE_PREFIX = "whatsapp-media"


class WhatsAppAPIError(Exception):
    """Media info lookup or download failed."""


class MediaStorageError(Exception):
    """Upload to durable storage failed."""


@dataclass
class MediaInfo:
    """Result of the media info endpoint."""

    id: str
    url: str
    mime_type: Optional[str] = None
    sha256: Optional[str] = None
    file_size: Optional[int] = None


class WhatsAppMediaClient:
    """Reads media through the Graph API with the system user access token."""

    def __init__(
        self,
        access_token: Optional[str],
        base_url: str,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    def _get(self, url: str) -> httpx.Response:
        if not self.access_token:
            raise WhatsAppAPIError("WHATSAPP_ACCESS_TOKEN not configured")
        headers = {"Authorization": f"Bearer {self.access_token}"}
        try:
            if self._client is not None:
                return self._client.get(url, headers=headers, timeout=self.timeout)
            with httpx.Client(timeout=self.timeout) as client:
                return client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            raise WhatsAppAPIError(f"Request to {url} failed: {exc}") from exc

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            error = response.json().get("error", {})
            return f"{error.get('message')} (code: {error.get('code')})"
        except ValueError:
            return response.text[:200]

    def get_media_info(self, media_id: str) -> MediaInfo:
        response = self._get(f"{self.base_url}/{media_id}")
        if response.status_code >= 400:
            raise WhatsAppAPIError(
                f"Media info lookup failed for {media_id}: {self._error_detail(response)}"
            )
        data = response.json()
        if not data.get("url"):
            raise WhatsAppAPIError(f"Media info for {media_id} has no download URL")

        try:
            file_size = int(data["file_size"]) if data.get("file_size") else None
        except (TypeError, ValueError):
            file_size = None

        return MediaInfo(
            id=data.get("id", media_id),
            url=data["url"],
            mime_type=data.get("mime_type"),
            sha256=data.get("sha256"),
            file_size=file_size,
        )

    def download_media(self, url: str) -> Tuple[bytes, str]:
        """Returns (content, content_type)."""
        response = self._get(url)
        if response.status_code >= 400:
            raise WhatsAppAPIError(f"Failed to download media: HTTP {response.status_code}")
        content_type = response.headers.get("content-type") or "application/octet-stream"
        return response.content, content_type


class S3MediaStorage:
    """S3/MinIO/R2-backed media bucket."""

    def __init__(
        self,
        bucket_name: str,
        endpoint_url: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: str = "us-east-1",
        public_base_url: Optional[str] = None,
        client: Optional[Any] = None,
    ) -> None:
        self.bucket_name = bucket_name
        self.endpoint_url = endpoint_url
        self.region = region
        self.public_base_url = public_base_url
        if client is not None:
            self.client = client
            return
        self.client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
        )

    def upload(self, key: str, data: bytes, content_type: Optional[str]) -> None:
        kwargs: dict = {
            "Bucket": self.bucket_name,
            "Key": key,
            "Body": data,
        }
        if content_type:
            kwargs["ContentType"] = content_type
        try:
            self.client.put_object(**kwargs)
        except Exception as exc:
            raise MediaStorageError(f"Failed to upload object {key}") from exc

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{key}"
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket_name}/{key}"
        return f"https://{self.bucket_name}.s3.{self.region}.amazonaws.com/{key}"


def build_media_filename(media: MediaContent) -> str:
    """Provider filename for documents, otherwise <media_id>.<ext>."""
    if isinstance(media, DocumentContent) and media.filename:
        return media.filename
    return f"{media.id}.{extension_for_mime_type(media.mime_type)}"


class MediaRelocator:
    """Copies the attachment of a stored message into durable storage."""

    def __init__(self, media_client: WhatsAppMediaClient, storage: S3MediaStorage) -> None:
        self.media_client = media_client
        self.storage = storage

    def relocate(self, db: Session, message_id: str, message: BaseInboundMessage):
        """
        Download the attachment of `message` and record a media row.

        Never raises. Returns the created WhatsAppMedia, or None when the
        media could not be fetched or recorded.
        """
        media = message.media()
        if media is None:
            return None

        try:
            info = self.media_client.get_media_info(media.id)
            data, content_type = self.media_client.download_media(info.url)

            filename = build_media_filename(media)
            storage_path: Optional[str] = f"{STORAGE_PREFIX}/{message_id}/{filename}"
            storage_url: Optional[str] = None
            try:
                self.storage.upload(storage_path, data, content_type)
                storage_url = self.storage.public_url(storage_path)
                record_media_upload(len(data))
            except MediaStorageError as e:
                logger.error(f"Media upload failed for message {message_id}: {e}")
                storage_path = None

            row = create_media(
                db,
                message_id,
                wa_media_id=media.id,
                mime_type=media.mime_type,
                file_name=filename,
                file_size=info.file_size if info.file_size is not None else len(data),
                sha256=media.sha256 or info.sha256,
                storage_path=storage_path,
                storage_url=storage_url,
                caption=media.caption,
            )
        except Exception:
            logger.exception(f"Failed to process media {media.id} for message {message_id}")
            record_event_outcome("media", "failed")
            return None

        record_event_outcome("media", "stored" if storage_url else "stored_without_upload")
        logger.info(f"Processed media attachment for message {message_id}")
        return row


@lru_cache()
def get_media_relocator() -> MediaRelocator:
    """Dependency returning the relocator configured from settings."""
    media_client = WhatsAppMediaClient(
        access_token=settings.WHATSAPP_ACCESS_TOKEN,
        base_url=settings.graph_api_base_url,
        timeout=settings.MEDIA_HTTP_TIMEOUT_SECONDS,
    )
    storage = S3MediaStorage(
        bucket_name=settings.MEDIA_BUCKET,
        endpoint_url=settings.S3_ENDPOINT_URL,
        access_key=settings.S3_ACCESS_KEY,
        secret_key=settings.S3_SECRET_KEY,
        region=settings.S3_REGION,
        public_base_url=settings.MEDIA_PUBLIC_BASE_URL,
    )
    return MediaRelocator(media_client, storage)
