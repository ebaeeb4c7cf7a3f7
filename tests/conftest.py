"""
Pytest configuration and shared fixtures.

Environment defaults are set before any application import so that the
module-level settings and engine pick up the test configuration.
"""

import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_whatsapp_inbound.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WHATSAPP_APP_SECRET", "test-app-secret")
os.environ.setdefault("WEBHOOK_VERIFY_TOKEN", "test-verify-token")

import httpx
import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports to ensure test env vars are used
from whatsapp_inbound.config import get_settings
get_settings.cache_clear()

from whatsapp_inbound.main import app
from whatsapp_inbound.media import MediaRelocator, S3MediaStorage, WhatsAppMediaClient, get_media_relocator
from whatsapp_inbound.storage import Base, SessionLocal, engine

from helpers import compute_signature


GRAPH_BASE_URL = "https://graph.facebook.test/v18.0"
LOOKASIDE_HOST = "lookaside.test"
PHONE_NUMBER_ID = "109876543210"
WABA_ID = "200000000000001"


class FakeS3Client:
    """In-memory stand-in for the boto3 S3 client."""

    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.content_types: dict[str, str] = {}
        self.fail = False

    def put_object(self, Bucket: str, Key: str, Body: bytes, ContentType: str = None):
        if self.fail:
            raise RuntimeError("S3 unavailable")
        self.objects[Key] = Body
        if ContentType:
            self.content_types[Key] = ContentType


class FakeGraphAPI:
    """Serves media info and media downloads through httpx.MockTransport."""

    def __init__(self):
        self.media: dict[str, dict] = {}
        self.failing_info: set[str] = set()
        self.failing_download: set[str] = set()
        self.requests: list[httpx.Request] = []

    def add_media(self, media_id: str, content: bytes = b"\x89PNG-bytes", mime_type: str = "image/jpeg"):
        self.media[media_id] = {"content": content, "mime_type": mime_type}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        media_id = request.url.path.rsplit("/", 1)[-1]

        if request.url.host == LOOKASIDE_HOST:
            if media_id in self.failing_download or media_id not in self.media:
                return httpx.Response(500, text="download failed")
            media = self.media[media_id]
            return httpx.Response(
                200,
                content=media["content"],
                headers={"content-type": media["mime_type"]},
            )

        if media_id in self.failing_info or media_id not in self.media:
            return httpx.Response(
                404,
                json={"error": {"message": "Unsupported get request", "code": 100}},
            )
        media = self.media[media_id]
        return httpx.Response(
            200,
            json={
                "messaging_product": "whatsapp",
                "url": f"https://{LOOKASIDE_HOST}/media/{media_id}",
                "mime_type": media["mime_type"],
                "sha256": "provider-sha",
                "file_size": str(len(media["content"])),
                "id": media_id,
            },
        )


@pytest.fixture
def fake_s3():
    return FakeS3Client()


@pytest.fixture
def graph_api():
    return FakeGraphAPI()


@pytest.fixture
def media_relocator(graph_api, fake_s3):
    """Relocator wired to the fake Graph API and fake S3 bucket."""
    media_client = WhatsAppMediaClient(
        access_token="test-token",
        base_url=GRAPH_BASE_URL,
        client=httpx.Client(transport=httpx.MockTransport(graph_api.handler)),
    )
    storage = S3MediaStorage(
        bucket_name="whatsapp-media",
        public_base_url="https://cdn.test",
        client=fake_s3,
    )
    return MediaRelocator(media_client, storage)


@pytest.fixture(scope="function")
def db():
    """Fresh tables and a session for direct service-level tests."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(media_relocator):
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)
    app.dependency_overrides[get_media_relocator] = lambda: media_relocator

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def make_payload():
    """Build a webhook envelope with a single entry and change."""

    def _make_payload(
        messages=None,
        statuses=None,
        contacts=None,
        errors=None,
        phone_number_id=PHONE_NUMBER_ID,
        waba_id=WABA_ID,
    ) -> dict:
        value = {
            "messaging_product": "whatsapp",
            "metadata": {
                "display_phone_number": "41445550000",
                "phone_number_id": phone_number_id,
            },
        }
        if messages is not None:
            value["messages"] = messages
        if statuses is not None:
            value["statuses"] = statuses
        if contacts is not None:
            value["contacts"] = contacts
        if errors is not None:
            value["errors"] = errors
        return {
            "object": "whatsapp_business_account",
            "entry": [{"id": waba_id, "changes": [{"field": "messages", "value": value}]}],
        }

    return _make_payload


@pytest.fixture
def post_webhook(client):
    """POST a payload to /webhook with a valid signature."""

    def _post(payload) -> httpx.Response:
        body = payload if isinstance(payload, str) else json.dumps(payload)
        return client.post(
            "/webhook",
            content=body,
            headers={
                "Content-Type": "application/json",
                "X-Hub-Signature-256": compute_signature(body),
            },
        )

    return _post

