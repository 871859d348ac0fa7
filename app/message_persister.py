"""
Message Persister: idempotent append of messages to a conversation.

In one transaction a new message:
- inserts the Message row ((instance_id, external_id) unique, redelivery
  is a no-op)
- bumps message_count and, for inbound, unread_count with atomic
  column increments and refreshes the last-message snapshot, but only
  while the conversation is still pending/open
- writes trigger_outbox rows for analysis (every Nth message), audio
  transcription and forwarding to the instance's webhook_url, delivered
  later by app.outbox
"""

import json
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.envelopes import Attachment
from app.errors import ConflictError, InternalError
from app.identity import ResolvedIdentity
from app.media import ObjectStorage, resolve_media
from app.metrics import record_trigger_scheduled
from app.models import (
    ACTIVE_STATUSES,
    Conversation,
    Direction,
    Message,
    MessageType,
    OutboxStatus,
    TriggerKind,
    TriggerOutbox,
)
from app.utils import utc_now_iso

logger = logging.getLogger(__name__)


@dataclass
class NewMessage:
    """Everything the persister needs, independent of where it came from."""
    dedup_id: str
    direction: Direction
    message_type: MessageType = MessageType.TEXT
    body: str = ""
    attachment: Optional[Attachment] = None
    sender: ResolvedIdentity = field(default_factory=ResolvedIdentity)
    sent_at: Optional[str] = None
    instance_id: Optional[str] = None  # Dedup scope; defaults to the conversation's instance
    media_url: Optional[str] = None  # Already stored media, skips resolution
    reply_to_id: Optional[str] = None
    quoted_body: Optional[str] = None
    quoted_sender: Optional[str] = None
    forward_url: Optional[str] = None
    forward_payload: Optional[dict] = None


@dataclass(frozen=True)
class AppendResult:
    message: Message
    was_new: bool
    triggers: List[str] = field(default_factory=list)


class ConversationClosedError(ConflictError):
    """
    The conversation was closed between routing and the append.

    Nothing was written. ``media_url`` carries the already uploaded
    attachment so a retry into a new conversation does not upload it twice.
    """

    def __init__(self, conversation_id: str, media_url: Optional[str]):
        super().__init__(f"conversation {conversation_id} closed during append")
        self.conversation_id = conversation_id
        self.media_url = media_url


def find_message_by_dedup_id(db: Session, instance_id: str, dedup_id: str) -> Optional[Message]:
    try:
        return (
            db.query(Message)
            .filter(Message.instance_id == instance_id, Message.external_id == dedup_id)
            .first()
        )
    except SQLAlchemyError as e:
        raise InternalError("message lookup failed") from e


def snapshot_body(body: str, message_type: MessageType) -> str:
    if body:
        return body
    return f"[{message_type.value}]"


def due_triggers(message_count: int, message_type: MessageType, media_url: Optional[str]) -> List[TriggerKind]:
    """Triggers owed by the message that brought the count to ``message_count``."""
    kinds = []
    interval = settings.ANALYSIS_MESSAGE_INTERVAL
    if interval > 0 and message_count > 0 and message_count % interval == 0:
        kinds.append(TriggerKind.ANALYSIS)
    if message_type == MessageType.AUDIO and media_url:
        kinds.append(TriggerKind.TRANSCRIPTION)
    return kinds


def _outbox_row(
    kind: TriggerKind,
    conversation_id: str,
    message: Message,
    now: str,
    payload: Optional[dict] = None,
    target_url: Optional[str] = None,
) -> TriggerOutbox:
    if payload is None:
        if kind == TriggerKind.ANALYSIS:
            payload = {"conversationId": conversation_id}
        else:
            payload = {"messageId": message.id, "mediaUrl": message.media_url}
    return TriggerOutbox(
        kind=kind.value,
        conversation_id=conversation_id,
        message_id=message.id,
        target_url=target_url,
        payload=json.dumps(payload),
        status=OutboxStatus.PENDING.value,
        attempts=0,
        next_attempt_at=now,
        created_at=now,
        updated_at=now,
    )


def append_message(
    db: Session,
    conversation: Conversation,
    new_message: NewMessage,
    storage: ObjectStorage,
) -> AppendResult:
    """
    Append a message unless its dedup id was already stored for the instance.

    Returns:
        AppendResult with was_new=False (and no side effects) for a replay

    Raises:
        ConversationClosedError: the conversation is no longer pending/open;
            the caller re-routes and retries
        InternalError: the datastore rejected the write; the whole event
            should fail so the provider retries
    """
    instance_id = new_message.instance_id or conversation.instance_id
    existing = find_message_by_dedup_id(db, instance_id, new_message.dedup_id)
    if existing is not None:
        logger.info(f"Duplicate message detected: {new_message.dedup_id}")
        return AppendResult(message=existing, was_new=False)

    conversation_id = conversation.id
    media_url = new_message.media_url or resolve_media(
        new_message.attachment, new_message.message_type, conversation_id, storage
    )

    now = utc_now_iso()
    sender = new_message.sender
    message = Message(
        conversation_id=conversation_id,
        instance_id=instance_id,
        external_id=new_message.dedup_id,
        direction=new_message.direction.value,
        body=new_message.body,
        media_url=media_url,
        message_type=new_message.message_type.value,
        sender_name=sender.sender_display_name,
        sender_remote_id=sender.sender_remote_id,
        sender_avatar_url=sender.sender_avatar_url,
        reply_to_id=new_message.reply_to_id,
        quoted_body=new_message.quoted_body,
        quoted_sender=new_message.quoted_sender,
        sent_at=new_message.sent_at,
        created_at=now,
    )

    values = {
        "message_count": Conversation.message_count + 1,
        "last_message_body": snapshot_body(new_message.body, new_message.message_type),
        "last_message_direction": new_message.direction.value,
        "last_message_at": now,
        "updated_at": now,
    }
    if new_message.direction == Direction.INBOUND:
        values["unread_count"] = Conversation.unread_count + 1

    try:
        db.add(message)
        db.flush()

        result = db.execute(
            update(Conversation)
            .where(
                Conversation.id == conversation_id,
                Conversation.status.in_(ACTIVE_STATUSES),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.rollback()
            logger.info(f"Conversation {conversation_id} closed before {new_message.dedup_id} was stored")
            raise ConversationClosedError(conversation_id, media_url)

        # Read back inside the transaction: the row is write-locked by the
        # update above, so this is exactly our increment
        message_count = db.execute(
            select(Conversation.message_count).where(Conversation.id == conversation_id)
        ).scalar_one()

        kinds = due_triggers(message_count, new_message.message_type, media_url)
        for kind in kinds:
            db.add(_outbox_row(kind, conversation_id, message, now))
        if new_message.forward_url and new_message.forward_payload is not None:
            kinds.append(TriggerKind.FORWARD)
            db.add(_outbox_row(
                TriggerKind.FORWARD,
                conversation_id,
                message,
                now,
                payload=new_message.forward_payload,
                target_url=new_message.forward_url,
            ))

        db.commit()
    except IntegrityError:
        # Concurrent delivery of the same event won the unique race
        db.rollback()
        logger.info(f"Duplicate message detected on insert: {new_message.dedup_id}")
        existing = find_message_by_dedup_id(db, instance_id, new_message.dedup_id)
        if existing is None:
            raise InternalError(f"message {new_message.dedup_id} conflicted but is missing")
        return AppendResult(message=existing, was_new=False)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to store message {new_message.dedup_id}: {e}")
        raise InternalError("failed to store message") from e

    db.refresh(conversation)
    for kind in kinds:
        record_trigger_scheduled(kind.value)
        logger.info(f"Scheduled {kind.value} trigger for conversation {conversation_id}")

    logger.info(
        f"Message created: {new_message.dedup_id} in conversation {conversation_id} "
        f"(count={message_count}, media={'yes' if media_url else 'no'})"
    )
    return AppendResult(message=message, was_new=True, triggers=[kind.value for kind in kinds])
