"""
Ingestion pipeline glue.

Webhook events: normalize -> resolve identity -> route -> append.
Outbound compose: resolve target -> route -> (claim) -> append.

Both paths go through the same conversation router, so a message composed
by an agent lands in the conversation the contact is already in.
"""

import logging
import uuid
from dataclasses import dataclass, replace
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import conversation_router
from app.conversation_router import ConversationTarget
from app.envelopes import Attachment, ConnectionEnvelope, MessageEnvelope, UnrecognizedEnvelope
from app.errors import InternalError, ValidationError
from app.identity import ResolvedIdentity, load_instance, resolve_identity, upsert_contact, upsert_group
from app.media import ObjectStorage
from app.message_persister import (
    AppendResult,
    ConversationClosedError,
    NewMessage,
    append_message,
    find_message_by_dedup_id,
)
from app.models import Contact, Conversation, Direction, Group, Instance, Message, MessageType
from app.normalizer import GROUP_SUFFIX, get_active_instance, normalize
from app.profiles import ProfileLookup
from app.utils import digits_only, utc_now_iso

logger = logging.getLogger(__name__)

# Re-routes when an agent keeps closing the conversation mid-append
MAX_ROUTE_ATTEMPTS = 3


@dataclass(frozen=True)
class IngestResult:
    event: str
    result: str
    dedup_id: Optional[str] = None
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None

    @property
    def duplicate(self) -> bool:
        return self.result == "duplicate"


@dataclass(frozen=True)
class SendResult:
    conversation: Conversation
    message: Message
    was_new: bool


def apply_connection_status(db: Session, envelope: ConnectionEnvelope) -> None:
    try:
        db.execute(
            update(Instance)
            .where(Instance.id == envelope.instance_id)
            .values(status=envelope.status.value, updated_at=utc_now_iso())
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to update instance {envelope.instance_id} status: {e}")
        raise InternalError("failed to update instance status") from e
    logger.info(f"Instance {envelope.instance_id} is now {envelope.status.value}")


def route_and_append(
    db: Session,
    instance: Instance,
    target: ConversationTarget,
    new_message: NewMessage,
    storage: ObjectStorage,
    agent_id: Optional[str] = None,
) -> AppendResult:
    """
    Append to the target's active conversation, creating it if needed.

    If an agent closes the conversation before the append commits, the
    message goes to a fresh conversation instead of the closed one.
    """
    for attempt in range(1, MAX_ROUTE_ATTEMPTS + 1):
        conversation = conversation_router.find_or_create_active(
            db, instance.tenant_id, instance.id, target, queue_id=instance.default_queue_id
        )
        if agent_id:
            conversation = conversation_router.claim(db, conversation.id, agent_id).conversation
        try:
            return append_message(db, conversation, new_message, storage)
        except ConversationClosedError as e:
            logger.info(f"Re-routing {new_message.dedup_id} away from closed {e.conversation_id} (attempt {attempt})")
            new_message = replace(new_message, attachment=None, media_url=e.media_url)

    raise InternalError(f"could not append {new_message.dedup_id}: conversation kept closing")


def ingest_message(
    db: Session,
    envelope: MessageEnvelope,
    lookup: ProfileLookup,
    storage: ObjectStorage,
    raw_payload: Optional[dict] = None,
) -> IngestResult:
    existing = find_message_by_dedup_id(db, envelope.instance_id, envelope.dedup_id)
    if existing is not None:
        # Replayed delivery: nothing to resolve, route or count
        logger.info(f"Duplicate message detected: {envelope.dedup_id}")
        return IngestResult(
            event="message",
            result="duplicate",
            dedup_id=envelope.dedup_id,
            conversation_id=existing.conversation_id,
            message_id=existing.id,
        )

    instance = load_instance(db, envelope.instance_id)
    identity = resolve_identity(db, envelope, lookup)
    target = ConversationTarget(contact_id=identity.contact_id, group_id=identity.group_id)

    appended = route_and_append(
        db,
        instance,
        target,
        NewMessage(
            dedup_id=envelope.dedup_id,
            direction=envelope.direction,
            message_type=envelope.message_type,
            body=envelope.body,
            attachment=envelope.attachment,
            sender=identity,
            sent_at=envelope.sent_at,
            instance_id=instance.id,
            reply_to_id=envelope.reply_to_id,
            quoted_body=envelope.quoted_body,
            quoted_sender=envelope.quoted_sender,
            forward_url=instance.webhook_url,
            forward_payload=raw_payload,
        ),
        storage,
    )
    return IngestResult(
        event="message",
        result="created" if appended.was_new else "duplicate",
        dedup_id=envelope.dedup_id,
        conversation_id=appended.message.conversation_id,
        message_id=appended.message.id,
    )


def ingest_event(
    db: Session,
    raw_payload: Any,
    lookup: ProfileLookup,
    storage: ObjectStorage,
) -> IngestResult:
    """
    Process one webhook delivery.

    A newly stored message event is also queued for forwarding to the
    instance's webhook_url, unchanged.

    Raises ValidationError, AuthError or NotFoundError for events that must
    be rejected, InternalError when the datastore fails.
    """
    envelope = normalize(db, raw_payload)

    if isinstance(envelope, ConnectionEnvelope):
        apply_connection_status(db, envelope)
        return IngestResult(event="connection", result="connection")

    if isinstance(envelope, UnrecognizedEnvelope):
        logger.warning(f"Ignoring unrecognized event {envelope.event_name!r} for instance {envelope.instance_id}")
        return IngestResult(event="unrecognized", result="ignored")

    return ingest_message(db, envelope, lookup, storage, raw_payload=raw_payload)


# =============================================================================
# Outbound compose
# =============================================================================

def resolve_outbound_target(
    db: Session,
    instance: Instance,
    to: str,
    lookup: ProfileLookup,
) -> ConversationTarget:
    """
    Resolve ``to`` as a contact id, a group id, a group JID or a phone number.

    Unknown phone numbers are upserted as contacts.
    """
    try:
        contact = db.query(Contact).filter(Contact.id == to, Contact.tenant_id == instance.tenant_id).first()
        if contact is not None:
            return ConversationTarget(contact_id=contact.id)
        group = db.query(Group).filter(Group.id == to, Group.tenant_id == instance.tenant_id).first()
        if group is not None:
            return ConversationTarget(group_id=group.id)
    except SQLAlchemyError as e:
        raise InternalError("target lookup failed") from e

    if to.strip().endswith(GROUP_SUFFIX):
        group = upsert_group(db, instance, to.strip(), None, None, lookup)
        return ConversationTarget(group_id=group.id)

    number = digits_only(to)
    if not number:
        raise ValidationError("target must be a contact id, group id or phone number")
    contact = upsert_contact(db, instance, number, None, None, lookup)
    return ConversationTarget(contact_id=contact.id)


def send_message(
    db: Session,
    instance_name: str,
    to: str,
    body: str,
    lookup: ProfileLookup,
    storage: ObjectStorage,
    attachment: Optional[Attachment] = None,
    message_type: MessageType = MessageType.TEXT,
    agent_id: Optional[str] = None,
    sender_name: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> SendResult:
    """
    Append an agent-composed outbound message to the target's active
    conversation, creating one if needed.

    A composing agent claims an unassigned conversation; a conversation
    held by someone else keeps its assignee.
    """
    if not body and attachment is None:
        raise ValidationError("a message needs a body or an attachment")

    instance = get_active_instance(db, instance_name)
    if idempotency_key:
        existing = find_message_by_dedup_id(db, instance.id, idempotency_key)
        if existing is not None:
            logger.info(f"Duplicate compose call: {idempotency_key}")
            conversation = conversation_router.get_conversation(db, existing.conversation_id)
            return SendResult(conversation=conversation, message=existing, was_new=False)

    target = resolve_outbound_target(db, instance, to, lookup)

    appended = route_and_append(
        db,
        instance,
        target,
        NewMessage(
            dedup_id=idempotency_key or f"local-{uuid.uuid4().hex}",
            direction=Direction.OUTBOUND,
            message_type=message_type,
            body=body,
            attachment=attachment,
            sender=ResolvedIdentity(sender_display_name=sender_name or agent_id),
            instance_id=instance.id,
        ),
        storage,
        agent_id=agent_id,
    )
    # For a retried compose call this is where the first attempt landed
    conversation = conversation_router.get_conversation(db, appended.message.conversation_id)
    logger.info(
        f"Outbound message {appended.message.id} in conversation {conversation.id} "
        f"({'created' if appended.was_new else 'duplicate'})"
    )
    return SendResult(conversation=conversation, message=appended.message, was_new=appended.was_new)
