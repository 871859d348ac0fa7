"""
Tests for the outbound compose path (POST /messages/send).
"""

from app.models import Contact, Conversation, Group, Instance, Message
from app.utils import utc_now_iso


def send(client, instance_name, **fields):
    payload = {"instance": instance_name, "to": "5537999990000", "body": "Olá!"}
    payload.update(fields)
    return client.post("/messages/send", json=payload)


class TestSendMessage:

    def test_reuses_open_conversation_of_other_agent(self, client, instance, db, signed_post, uazapi_text):
        signed_post(client, uazapi_text("m1", number="5537999990000"))
        conversation = db.query(Conversation).one()
        client.post(f"/conversations/{conversation.id}/claim", json={"agent_id": "agent-a"})

        response = send(client, instance.name, to="5537999990000", body="Posso ajudar?", agent_id="agent-b")

        assert response.status_code == 200
        body = response.json()
        assert body["conversation_id"] == conversation.id
        assert body["created"] is True

        db.expire_all()
        assert db.query(Conversation).count() == 1
        conversation = db.get(Conversation, conversation.id)
        assert conversation.assigned_agent_id == "agent-a"
        assert conversation.status == "open"
        assert conversation.message_count == 2
        assert conversation.unread_count == 1
        assert conversation.last_message_direction == "outbound"

        message = db.get(Message, body["message_id"])
        assert message.direction == "outbound"
        assert message.body == "Posso ajudar?"
        assert message.sender_name == "agent-b"

    def test_send_to_contact_id(self, client, instance, db, signed_post, uazapi_text):
        signed_post(client, uazapi_text("m1"))
        contact = db.query(Contact).one()

        response = send(client, instance.name, to=contact.id)

        assert response.status_code == 200
        assert response.json()["conversation_id"] == db.query(Conversation).one().id

    def test_new_number_creates_contact_and_claims(self, client, instance, db):
        response = send(client, instance.name, to="+55 (37) 98888-1111", agent_id="agent-a", sender_name="Ana")

        assert response.status_code == 200
        contact = db.query(Contact).one()
        assert contact.remote_id == "5537988881111"
        conversation = db.query(Conversation).one()
        assert conversation.contact_id == contact.id
        assert conversation.assigned_agent_id == "agent-a"
        assert conversation.status == "open"
        assert db.query(Message).one().sender_name == "Ana"

    def test_send_to_group_jid(self, client, instance, db):
        response = send(client, instance.name, to="120363000000000000@g.us")

        assert response.status_code == 200
        group = db.query(Group).one()
        assert db.query(Conversation).one().group_id == group.id

    def test_idempotency_key(self, client, instance, db):
        first = send(client, instance.name, idempotency_key="compose-1")
        second = send(client, instance.name, idempotency_key="compose-1")

        assert first.json()["created"] is True
        assert second.json()["created"] is False
        assert second.json()["message_id"] == first.json()["message_id"]
        assert db.query(Message).count() == 1

    def test_attachment_upload(self, client, instance, storage):
        response = send(
            client,
            instance.name,
            body="",
            message_type="image",
            attachment={"data": "iVBORw0KGgo=", "mime_type": "image/png"},
        )

        assert response.status_code == 200
        assert response.json()["media_url"].endswith(".png")
        assert len(storage.objects) == 1

    def test_empty_message_rejected(self, client, instance):
        response = send(client, instance.name, body="")

        assert response.status_code == 422

    def test_attachment_needs_source(self, client, instance):
        response = send(client, instance.name, attachment={"mime_type": "image/png"})

        assert response.status_code == 422

    def test_unknown_instance(self, client, instance):
        response = send(client, "ghost")

        assert response.status_code == 404

    def test_invalid_target(self, client, instance):
        response = send(client, instance.name, to="not-a-number")

        assert response.status_code == 422

    def test_idempotency_key_survives_close(self, client, instance, db):
        first = send(client, instance.name, idempotency_key="compose-1")
        client.post(f"/conversations/{first.json()['conversation_id']}/close")

        second = send(client, instance.name, idempotency_key="compose-1")

        assert second.json()["created"] is False
        assert second.json()["message_id"] == first.json()["message_id"]
        assert second.json()["conversation_id"] == first.json()["conversation_id"]
        assert db.query(Conversation).count() == 1

    def test_same_key_on_another_instance_is_new(self, client, instance, db):
        now = utc_now_iso()
        db.add(Instance(name="lab-main", tenant_id="tenant-2", credential="tok-lab", created_at=now, updated_at=now))
        db.commit()

        first = send(client, instance.name, idempotency_key="compose-1")
        second = send(client, "lab-main", idempotency_key="compose-1")

        assert first.json()["created"] is True
        assert second.json()["created"] is True
        assert db.query(Message).count() == 2
