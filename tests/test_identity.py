"""
Tests for identity resolution and best-effort profile enrichment.
"""

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from app import identity
from app.envelopes import MessageEnvelope
from app.errors import InternalError
from app.identity import ProfileFields, merge_profile, resolve_identity, upsert_contact, upsert_group
from app.models import Contact, Group, GroupMember
from app.profiles import LookupResult, ProfileLookup


def envelope(instance, **overrides) -> MessageEnvelope:
    fields = {
        "event_name": "messages",
        "instance_id": instance.id,
        "tenant_id": instance.tenant_id,
        "dedup_id": "m1",
        "remote_id": "5537999990000",
        "sender_id": "5537999990000",
        "sender_name": "Maria",
        "chat_name": "Maria",
        "body": "oi",
    }
    fields.update(overrides)
    return MessageEnvelope(**fields)


class TestMergeProfile:

    def test_hint_wins(self):
        merged = merge_profile(
            ProfileFields(name="Old", avatar_url="old.jpg"),
            "New",
            "new.jpg",
            LookupResult(found=True, name="Lookup", avatar_url="lookup.jpg"),
        )
        assert merged == ProfileFields(name="New", avatar_url="new.jpg")

    def test_lookup_fills_gaps(self):
        merged = merge_profile(
            ProfileFields(name=None, avatar_url=None),
            None,
            None,
            LookupResult(found=True, name="Lookup", avatar_url="lookup.jpg"),
        )
        assert merged == ProfileFields(name="Lookup", avatar_url="lookup.jpg")

    def test_failed_lookup_keeps_stored_values(self):
        merged = merge_profile(
            ProfileFields(name="Maria", avatar_url="maria.jpg"),
            None,
            None,
            LookupResult.missing(),
        )
        assert merged == ProfileFields(name="Maria", avatar_url="maria.jpg")

    def test_placeholder_name_never_overwrites(self):
        merged = merge_profile(
            ProfileFields(name="Maria", avatar_url=None),
            "Unknown",
            None,
            LookupResult(found=True, name="desconhecido"),
        )
        assert merged.name == "Maria"


class TestUpsertContact:

    def test_creates_then_updates(self, db, instance, make_lookup):
        lookup = make_lookup(LookupResult(found=True, avatar_url="https://pics.test/maria.jpg"))

        first = upsert_contact(db, instance, "5537999990000", "Maria", None, lookup)
        second = upsert_contact(db, instance, "5537999990000", "Maria Silva", None, lookup)

        assert first.id == second.id
        assert second.push_name == "Maria Silva"
        assert second.avatar_url == "https://pics.test/maria.jpg"
        assert db.query(Contact).count() == 1

    def test_hint_avatar_skips_lookup(self, db, instance, make_lookup):
        lookup = make_lookup(LookupResult(found=True, avatar_url="https://pics.test/other.jpg"))

        contact = upsert_contact(db, instance, "5537999990000", "Maria", "https://pics.test/hint.jpg", lookup)

        assert contact.avatar_url == "https://pics.test/hint.jpg"
        assert lookup.calls == []

    def test_provider_outage_keeps_avatar(self, db, instance):
        instance.server_url = "https://provider.test"
        db.commit()

        responses = iter([
            httpx.Response(200, json={"name": "Maria", "image": "https://pics.test/maria.jpg"}),
            httpx.Response(503, json={"error": "down"}),
        ])
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.url.path, request.headers.get("token")))
            return next(responses)

        lookup = ProfileLookup(timeout=1.0, transport=httpx.MockTransport(handler))

        upsert_contact(db, instance, "5537999990000", None, None, lookup)
        contact = upsert_contact(db, instance, "5537999990000", None, None, lookup)

        assert contact.push_name == "Maria"
        assert contact.avatar_url == "https://pics.test/maria.jpg"
        assert seen == [("/chat/details", instance.credential)] * 2

    def test_lookup_timeout_is_not_fatal(self, db, instance):
        instance.server_url = "https://provider.test"
        db.commit()

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        lookup = ProfileLookup(timeout=0.1, transport=httpx.MockTransport(handler))

        contact = upsert_contact(db, instance, "5537999990000", "Maria", None, lookup)

        assert contact.push_name == "Maria"
        assert contact.avatar_url is None

    def test_disabled_lookup_makes_no_calls(self, db, instance):
        instance.server_url = "https://provider.test"
        db.commit()

        def handler(request: httpx.Request) -> httpx.Response:
            pytest.fail("lookup should not be called")

        lookup = ProfileLookup(timeout=1.0, enabled=False, transport=httpx.MockTransport(handler))

        contact = upsert_contact(db, instance, "5537999990000", "Maria", None, lookup)

        assert contact.push_name == "Maria"

    def test_malformed_server_url_is_not_fatal(self, db, instance):
        instance.server_url = "http://[::1"
        db.commit()
        lookup = ProfileLookup(timeout=1.0)

        contact = upsert_contact(db, instance, "5537999990000", "Maria", None, lookup)
        group = upsert_group(db, instance, "120363000000000000@g.us", "Pacientes", None, lookup)

        assert contact.push_name == "Maria"
        assert contact.avatar_url is None
        assert group.name == "Pacientes"

    def test_unexpected_transport_error_is_not_fatal(self, db, instance):
        instance.server_url = "https://provider.test"
        db.commit()

        def handler(request: httpx.Request) -> httpx.Response:
            raise RuntimeError("transport exploded")

        lookup = ProfileLookup(timeout=1.0, transport=httpx.MockTransport(handler))

        contact = upsert_contact(db, instance, "5537999990000", "Maria", None, lookup)

        assert contact.push_name == "Maria"

    def test_datastore_failure_on_read_is_internal_error(self, db, instance, make_lookup, monkeypatch):
        def broken_find(db, model, filters):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr(identity, "_find", broken_find)

        with pytest.raises(InternalError):
            upsert_contact(db, instance, "5537999990000", "Maria", None, make_lookup())
        with pytest.raises(InternalError):
            upsert_group(db, instance, "120363000000000000@g.us", None, None, make_lookup())


class TestResolveIdentity:

    def test_individual_sender(self, db, instance, make_lookup):
        identity = resolve_identity(db, envelope(instance), make_lookup())

        contact = db.query(Contact).one()
        assert identity.contact_id == contact.id
        assert identity.group_id is None
        assert identity.sender_display_name == "Maria"
        assert identity.sender_remote_id == "5537999990000"

    def test_group_sender(self, db, instance, make_lookup):
        lookup = make_lookup(LookupResult(found=True, name="Clínica - Pacientes"))

        identity = resolve_identity(
            db,
            envelope(
                instance,
                remote_id="120363000000000000@g.us",
                is_group=True,
                sender_id="5511988887777",
                sender_name="João",
                chat_name=None,
            ),
            lookup,
        )

        group = db.query(Group).one()
        member = db.query(GroupMember).one()
        assert group.name == "Clínica - Pacientes"
        assert identity.group_id == group.id
        assert identity.contact_id is None
        assert identity.group_member_id == member.id
        assert identity.sender_display_name == "João"
        assert lookup.calls == [("group", "120363000000000000@g.us")]

    def test_message_from_own_phone(self, db, instance, make_lookup):
        identity = resolve_identity(db, envelope(instance, from_me=True, chat_name=None), make_lookup())

        assert identity.contact_id == db.query(Contact).one().id
        assert identity.sender_display_name is None

    def test_malformed_server_url_during_resolution(self, db, instance):
        instance.server_url = "http://[::1"
        db.commit()

        resolved = resolve_identity(db, envelope(instance), ProfileLookup(timeout=1.0))

        contact = db.get(Contact, resolved.contact_id)
        assert contact.push_name == "Maria"
        assert resolved.sender_display_name == "Maria"
