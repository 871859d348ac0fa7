"""
Identity Resolver: upserts Contact, Group and GroupMember rows for an
incoming message and returns the sender snapshot stored on the message.

Upserts follow insert-then-catch-IntegrityError, the same pattern used for
message dedup: the unique constraints decide races, never a prior read.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.envelopes import MessageEnvelope
from app.errors import InternalError
from app.models import Contact, Group, GroupMember, Instance
from app.profiles import LookupResult, ProfileLookup
from app.utils import utc_now_iso

logger = logging.getLogger(__name__)

# Names providers send when they do not know the real one
PLACEHOLDER_NAMES = {"", "unknown", "desconhecido", "membro desconhecido", "grupo desconhecido"}


@dataclass(frozen=True)
class ProfileFields:
    name: Optional[str]
    avatar_url: Optional[str]


@dataclass(frozen=True)
class ResolvedIdentity:
    contact_id: Optional[str] = None
    group_id: Optional[str] = None
    group_member_id: Optional[str] = None
    sender_display_name: Optional[str] = None
    sender_avatar_url: Optional[str] = None
    sender_remote_id: Optional[str] = None


def _meaningful(name: Optional[str]) -> Optional[str]:
    if name is None or name.strip().lower() in PLACEHOLDER_NAMES:
        return None
    return name.strip()


def merge_profile(
    current: ProfileFields,
    hint_name: Optional[str],
    hint_avatar: Optional[str],
    lookup: LookupResult,
) -> ProfileFields:
    """
    Decide the name and avatar to store.

    Payload hints win, then a successful lookup, then whatever is already
    stored (None on first sighting). A failed lookup therefore never erases
    a known value, and placeholder names never replace a real one.
    """
    name = _meaningful(hint_name)
    avatar = hint_avatar or None
    if lookup.found:
        name = name or _meaningful(lookup.name)
        avatar = avatar or lookup.avatar_url
    return ProfileFields(
        name=name or current.name,
        avatar_url=avatar or current.avatar_url,
    )


def _find(db: Session, model, filters: dict):
    return db.query(model).filter_by(**filters).first()


def _upsert(db: Session, model, filters: dict, fields: dict):
    """
    Insert a row keyed by ``filters`` or update the existing one.

    Only non-None values in ``fields`` are written to an existing row
    (last write wins, no versioning).
    """
    now = utc_now_iso()
    try:
        row = _find(db, model, filters)
        if row is None:
            row = model(**filters, **fields, created_at=now, updated_at=now)
            db.add(row)
            try:
                db.commit()
                return row
            except IntegrityError:
                # A concurrent delivery inserted it first
                db.rollback()
                row = _find(db, model, filters)
                if row is None:
                    raise InternalError(f"{model.__tablename__} upsert lost its row")

        changes = {
            key: value for key, value in fields.items()
            if value is not None and getattr(row, key) != value
        }
        if changes:
            for key, value in changes.items():
                setattr(row, key, value)
            row.updated_at = now
            db.commit()
        return row
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to upsert {model.__tablename__} {filters}: {e}")
        raise InternalError(f"failed to store {model.__tablename__}") from e


def _stored_profile(db: Session, model, filters: dict, name_attr: str, avatar_attr: str) -> ProfileFields:
    try:
        row = _find(db, model, filters)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to read {model.__tablename__} {filters}: {e}")
        raise InternalError(f"failed to read {model.__tablename__}") from e
    if row is None:
        return ProfileFields(name=None, avatar_url=None)
    return ProfileFields(name=getattr(row, name_attr), avatar_url=getattr(row, avatar_attr))


def upsert_contact(
    db: Session,
    instance: Instance,
    remote_id: str,
    hint_name: Optional[str],
    hint_avatar: Optional[str],
    lookup: ProfileLookup,
) -> Contact:
    filters = {"tenant_id": instance.tenant_id, "remote_id": remote_id}
    current = _stored_profile(db, Contact, filters, "push_name", "avatar_url")

    # The lookup runs outside any write transaction
    result = lookup.contact_profile(instance, remote_id) if not hint_avatar else LookupResult.missing()
    merged = merge_profile(current, hint_name, hint_avatar, result)

    return _upsert(db, Contact, filters, {
        "instance_id": instance.id,
        "push_name": merged.name,
        "avatar_url": merged.avatar_url,
    })


def upsert_group(
    db: Session,
    instance: Instance,
    remote_id: str,
    hint_name: Optional[str],
    hint_picture: Optional[str],
    lookup: ProfileLookup,
) -> Group:
    filters = {"tenant_id": instance.tenant_id, "remote_id": remote_id}
    current = _stored_profile(db, Group, filters, "name", "picture_url")

    result = lookup.group_profile(instance, remote_id) if not hint_picture else LookupResult.missing()
    merged = merge_profile(current, hint_name, hint_picture, result)

    return _upsert(db, Group, filters, {
        "instance_id": instance.id,
        "name": merged.name,
        "picture_url": merged.avatar_url,
    })


def upsert_group_member(db: Session, group: Group, remote_id: str, hint_name: Optional[str]) -> GroupMember:
    filters = {"group_id": group.id, "remote_id": remote_id}
    return _upsert(db, GroupMember, filters, {"push_name": _meaningful(hint_name)})


def load_instance(db: Session, instance_id: str) -> Instance:
    try:
        instance = db.get(Instance, instance_id)
    except SQLAlchemyError as e:
        raise InternalError("instance lookup failed") from e
    if instance is None:
        raise InternalError(f"instance vanished during ingestion: {instance_id}")
    return instance


def resolve_identity(db: Session, envelope: MessageEnvelope, lookup: ProfileLookup) -> ResolvedIdentity:
    """
    Upsert the identities referenced by a message envelope.

    Lookup failures degrade to stored values; only datastore failures
    raise (InternalError).
    """
    instance = load_instance(db, envelope.instance_id)

    if envelope.is_group:
        group = upsert_group(db, instance, envelope.remote_id, envelope.chat_name, envelope.chat_avatar_url, lookup)
        member = None
        if envelope.sender_id:
            member = upsert_group_member(db, group, envelope.sender_id, envelope.sender_name)
        logger.info(f"Resolved group {group.id} (member={member.id if member else None})")
        return ResolvedIdentity(
            group_id=group.id,
            group_member_id=member.id if member else None,
            sender_display_name=(member.push_name if member else None) or _meaningful(envelope.sender_name),
            sender_avatar_url=member.avatar_url if member else None,
            sender_remote_id=envelope.sender_id,
        )

    contact = upsert_contact(db, instance, envelope.remote_id, envelope.chat_name, envelope.chat_avatar_url, lookup)
    logger.info(f"Resolved contact {contact.id} for {envelope.remote_id}")
    if envelope.from_me:
        # Sent from the paired phone; the contact is the recipient
        return ResolvedIdentity(contact_id=contact.id)
    return ResolvedIdentity(
        contact_id=contact.id,
        sender_display_name=contact.push_name,
        sender_avatar_url=contact.avatar_url,
        sender_remote_id=contact.remote_id,
    )


