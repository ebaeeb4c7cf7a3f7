"""
Tests for the GET /messages and GET /conversations endpoints.

Tests cover:
- Basic retrieval with default pagination
- Pagination with limit and offset
- Filtering by conversation, status, direction
- Free-text search (q)
- Media attached to messages
- Conversation listing and filters
- Parameter validation
"""

import pytest

from helpers import contact, media_message, status_update, text_message
from whatsapp_inbound.models import WhatsAppConversation
from whatsapp_inbound.storage import SessionLocal


@pytest.fixture
def seeded_client(client, post_webhook, make_payload):
    """Client with two conversations and a handful of messages."""
    post_webhook(make_payload(
        messages=[
            text_message(wamid="wamid.1", body="Hallo zusammen"),
            text_message(wamid="wamid.2", body="Wann ist das Interview?"),
            text_message(wamid="wamid.3", body="Danke, hallo nochmals"),
        ],
        contacts=[contact(name="Anna Muster")],
    ))
    post_webhook(make_payload(
        messages=[
            text_message(wamid="wamid.4", wa_id="41795555555", body="Guten Tag"),
            {"from": "41795555555", "id": "wamid.5", "timestamp": "1700000000", "type": "contacts",
             "contacts": [{"name": {"formatted_name": "Max"}}]},
        ],
        contacts=[contact(wa_id="41795555555", name="Beat Beispiel")],
    ))
    post_webhook(make_payload(statuses=[status_update(wamid="wamid.2", status="read")]))
    return client


def _conversation_id(client, wa_id: str) -> str:
    conversations = client.get("/conversations").json()["data"]
    return next(c["id"] for c in conversations if c["wa_id"] == wa_id)


class TestMessagesBasic:
    """Test basic messages retrieval."""

    def test_empty_database(self, client):
        response = client.get("/messages")

        assert response.status_code == 200
        data = response.json()
        assert data["data"] == []
        assert data["total"] == 0
        assert data["limit"] == 50
        assert data["offset"] == 0

    def test_get_all_messages(self, seeded_client):
        response = seeded_client.get("/messages")

        assert response.status_code == 200
        data = response.json()
        assert len(data["data"]) == 5
        assert data["total"] == 5

    def test_message_fields(self, seeded_client):
        msg = seeded_client.get("/messages").json()["data"][0]

        for field in ("id", "conversation_id", "wamid", "direction", "message_type", "status",
                      "body", "sent_at", "delivered_at", "read_at", "created_at", "media"):
            assert field in msg
        assert "raw_payload" not in msg

    def test_deterministic_ordering(self, seeded_client):
        """Messages are ordered by created_at ASC, id ASC."""
        data = seeded_client.get("/messages").json()["data"]

        keys = [(m["created_at"], m["id"]) for m in data]
        assert keys == sorted(keys)

    def test_contacts_message_without_body(self, seeded_client):
        data = seeded_client.get("/messages").json()["data"]

        contacts_message = next(m for m in data if m["wamid"] == "wamid.5")
        assert contacts_message["message_type"] == "contacts"
        assert contacts_message["body"] is None


class TestMessagesPagination:

    def test_limit(self, seeded_client):
        data = seeded_client.get("/messages?limit=2").json()

        assert len(data["data"]) == 2
        assert data["total"] == 5
        assert data["limit"] == 2

    def test_pages_do_not_overlap(self, seeded_client):
        first = seeded_client.get("/messages?limit=3&offset=0").json()["data"]
        second = seeded_client.get("/messages?limit=3&offset=3").json()["data"]

        ids = [m["id"] for m in first + second]
        assert len(ids) == 5
        assert len(set(ids)) == 5

    def test_offset_beyond_total(self, seeded_client):
        data = seeded_client.get("/messages?offset=100").json()

        assert data["data"] == []
        assert data["total"] == 5

    @pytest.mark.parametrize("query", ["limit=0", "limit=101", "offset=-1", "limit=abc"])
    def test_invalid_pagination(self, client, query):
        response = client.get(f"/messages?{query}")

        assert response.status_code == 422


class TestMessagesFilters:

    def test_filter_by_conversation(self, seeded_client):
        conversation_id = _conversation_id(seeded_client, "41795555555")

        data = seeded_client.get(f"/messages?conversation_id={conversation_id}").json()

        assert data["total"] == 2
        assert {m["wamid"] for m in data["data"]} == {"wamid.4", "wamid.5"}

    def test_filter_by_status(self, seeded_client):
        data = seeded_client.get("/messages?status=read").json()

        assert data["total"] == 1
        assert data["data"][0]["wamid"] == "wamid.2"
        assert data["data"][0]["read_at"] == "2023-11-14T22:15:00Z"

    def test_filter_by_direction(self, seeded_client):
        assert seeded_client.get("/messages?direction=inbound").json()["total"] == 5
        assert seeded_client.get("/messages?direction=outbound").json()["total"] == 0

    def test_invalid_status_value(self, client):
        assert client.get("/messages?status=seen").status_code == 422

    def test_search_is_case_insensitive(self, seeded_client):
        data = seeded_client.get("/messages?q=HALLO").json()

        assert data["total"] == 2
        assert {m["wamid"] for m in data["data"]} == {"wamid.1", "wamid.3"}

    def test_search_without_match(self, seeded_client):
        assert seeded_client.get("/messages?q=Bewerbung").json()["total"] == 0

    def test_combined_filters(self, seeded_client):
        conversation_id = _conversation_id(seeded_client, "41791234567")

        data = seeded_client.get(f"/messages?conversation_id={conversation_id}&q=interview").json()

        assert data["total"] == 1
        assert data["data"][0]["wamid"] == "wamid.2"


class TestMessagesMedia:

    def test_media_is_embedded(self, client, post_webhook, make_payload, graph_api):
        graph_api.add_media("media-1")
        post_webhook(make_payload(messages=[media_message(caption="Foto")]))

        msg = client.get("/messages").json()["data"][0]

        assert msg["body"] == "Foto"
        assert msg["media"]["wa_media_id"] == "media-1"
        assert msg["media"]["file_name"] == "media-1.jpg"
        assert msg["media"]["storage_url"].startswith("https://cdn.test/whatsapp-media/")

    def test_text_message_has_no_media(self, seeded_client):
        msg = seeded_client.get("/messages").json()["data"][0]

        assert msg["media"] is None


class TestConversations:

    def test_empty(self, client):
        data = client.get("/conversations").json()

        assert data == {"data": [], "total": 0, "limit": 50, "offset": 0}

    def test_list_conversations(self, seeded_client):
        data = seeded_client.get("/conversations").json()

        assert data["total"] == 2
        by_wa_id = {c["wa_id"]: c for c in data["data"]}
        assert by_wa_id["41791234567"]["profile_name"] == "Anna Muster"
        assert by_wa_id["41791234567"]["unread_count"] == 3
        assert by_wa_id["41791234567"]["phone_number"] == "+41791234567"
        assert by_wa_id["41795555555"]["unread_count"] == 2
        # Latest message is a contacts card without body
        assert by_wa_id["41795555555"]["last_message_preview"] is None
        assert by_wa_id["41791234567"]["last_message_preview"] == "Danke, hallo nochmals"

    def test_unread_filter(self, seeded_client):
        with SessionLocal() as db:
            db.query(WhatsAppConversation).filter(
                WhatsAppConversation.wa_id == "41795555555"
            ).update({"is_unread": False, "unread_count": 0})
            db.commit()

        unread = seeded_client.get("/conversations?unread=true").json()
        read = seeded_client.get("/conversations?unread=false").json()

        assert [c["wa_id"] for c in unread["data"]] == ["41791234567"]
        assert [c["wa_id"] for c in read["data"]] == ["41795555555"]

    def test_account_filter(self, seeded_client, post_webhook, make_payload):
        post_webhook(make_payload(messages=[text_message(wamid="wamid.9")], phone_number_id="999"))
        account_ids = {c["account_id"] for c in seeded_client.get("/conversations").json()["data"]}
        assert len(account_ids) == 2

        for account_id in account_ids:
            data = seeded_client.get(f"/conversations?account_id={account_id}").json()
            assert all(c["account_id"] == account_id for c in data["data"])
            assert data["total"] in (1, 2)

    def test_pagination(self, seeded_client):
        data = seeded_client.get("/conversations?limit=1&offset=1").json()

        assert len(data["data"]) == 1
        assert data["total"] == 2
