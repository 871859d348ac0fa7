"""
Tests for the conversation endpoints used by the agent UI.

Tests cover:
- Listing with pagination and filters
- Message history of a conversation
- Claim and close
"""

import pytest


@pytest.fixture
def seeded_client(client, instance, signed_post, uazapi_text):
    """Client with three contacts, the first one with two messages."""
    signed_post(client, uazapi_text("m1", number="5537999990001", text="oi"))
    signed_post(client, uazapi_text("m2", number="5537999990002", text="olá"))
    signed_post(client, uazapi_text("m3", number="5537999990003", text="bom dia"))
    signed_post(client, uazapi_text("m4", number="5537999990001", text="tem horário?"))
    return client


def conversation_for(client, body: str) -> dict:
    data = client.get("/conversations").json()["data"]
    return next(conv for conv in data if conv["last_message_body"] == body)


class TestListConversations:

    def test_empty_database(self, client):
        response = client.get("/conversations")

        assert response.status_code == 200
        assert response.json() == {"data": [], "total": 0, "limit": 50, "offset": 0}

    def test_most_recent_first(self, seeded_client):
        data = seeded_client.get("/conversations").json()

        assert data["total"] == 3
        assert [conv["last_message_body"] for conv in data["data"]] == ["tem horário?", "bom dia", "olá"]

    def test_conversation_fields(self, seeded_client):
        conv = conversation_for(seeded_client, "tem horário?")

        assert conv["status"] == "pending"
        assert conv["unread_count"] == 2
        assert conv["message_count"] == 2
        assert conv["assigned_agent_id"] is None
        assert conv["contact_id"] is not None
        assert conv["group_id"] is None

    def test_pagination(self, seeded_client):
        data = seeded_client.get("/conversations?limit=2&offset=1").json()

        assert data["total"] == 3
        assert len(data["data"]) == 2
        assert data["limit"] == 2
        assert data["offset"] == 1

    def test_limit_above_max_rejected(self, seeded_client):
        response = seeded_client.get("/conversations?limit=101")
        assert response.status_code == 422

    def test_invalid_status_rejected(self, seeded_client):
        response = seeded_client.get("/conversations?status=archived")
        assert response.status_code == 422

    def test_filter_by_status(self, seeded_client):
        conv = conversation_for(seeded_client, "olá")
        seeded_client.post(f"/conversations/{conv['id']}/close")

        closed = seeded_client.get("/conversations?status=closed").json()
        pending = seeded_client.get("/conversations?status=pending").json()

        assert closed["total"] == 1
        assert closed["data"][0]["id"] == conv["id"]
        assert pending["total"] == 2

    def test_filter_by_agent(self, seeded_client):
        conv = conversation_for(seeded_client, "bom dia")
        seeded_client.post(f"/conversations/{conv['id']}/claim", json={"agent_id": "agent-a"})

        data = seeded_client.get("/conversations?agent_id=agent-a").json()

        assert data["total"] == 1
        assert data["data"][0]["id"] == conv["id"]

    def test_filter_by_instance(self, seeded_client, instance):
        assert seeded_client.get(f"/conversations?instance_id={instance.id}").json()["total"] == 3
        assert seeded_client.get("/conversations?instance_id=other").json()["total"] == 0


class TestConversationMessages:

    def test_messages_oldest_first(self, seeded_client):
        conv = conversation_for(seeded_client, "tem horário?")

        response = seeded_client.get(f"/conversations/{conv['id']}/messages")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert [msg["body"] for msg in data["data"]] == ["oi", "tem horário?"]
        assert data["data"][0]["external_id"] == "m1"
        assert data["data"][0]["direction"] == "inbound"

    def test_unknown_conversation(self, client):
        response = client.get("/conversations/does-not-exist/messages")

        assert response.status_code == 404


class TestClaimAndClose:

    def test_claim_unassigned(self, seeded_client):
        conv = conversation_for(seeded_client, "olá")

        response = seeded_client.post(f"/conversations/{conv['id']}/claim", json={"agent_id": "agent-a"})

        assert response.status_code == 200
        assert response.json() == {
            "conversation_id": conv["id"],
            "claimed": True,
            "assigned_agent_id": "agent-a",
            "status": "open",
        }

    def test_claim_held_by_other_agent(self, seeded_client):
        conv = conversation_for(seeded_client, "olá")
        seeded_client.post(f"/conversations/{conv['id']}/claim", json={"agent_id": "agent-a"})

        response = seeded_client.post(f"/conversations/{conv['id']}/claim", json={"agent_id": "agent-b"})

        assert response.status_code == 200
        body = response.json()
        assert body["claimed"] is False
        assert body["assigned_agent_id"] == "agent-a"

    def test_claim_requires_agent(self, seeded_client):
        conv = conversation_for(seeded_client, "olá")

        response = seeded_client.post(f"/conversations/{conv['id']}/claim", json={})

        assert response.status_code == 422

    def test_claim_unknown_conversation(self, client):
        response = client.post("/conversations/nope/claim", json={"agent_id": "agent-a"})

        assert response.status_code == 404

    def test_close_then_next_message_opens_new_conversation(self, seeded_client, instance, signed_post, uazapi_text):
        conv = conversation_for(seeded_client, "bom dia")

        response = seeded_client.post(f"/conversations/{conv['id']}/close")
        assert response.status_code == 200
        assert response.json()["status"] == "closed"
        assert response.json()["closed_at"] is not None

        signed_post(seeded_client, uazapi_text("m5", number="5537999990003", text="voltei"))

        data = seeded_client.get("/conversations").json()
        assert data["total"] == 4
        newest = data["data"][0]
        assert newest["last_message_body"] == "voltei"
        assert newest["id"] != conv["id"]
        assert newest["status"] == "pending"
        assert newest["contact_id"] == conv["contact_id"]

    def test_close_is_idempotent(self, seeded_client):
        conv = conversation_for(seeded_client, "olá")

        first = seeded_client.post(f"/conversations/{conv['id']}/close")
        second = seeded_client.post(f"/conversations/{conv['id']}/close")

        assert second.status_code == 200
        assert second.json()["closed_at"] == first.json()["closed_at"]
