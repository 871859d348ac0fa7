"""
Conversation Router: the pending/open/closed state machine.

    (none) --find_or_create_active--> pending
    pending/open --claim (assigned agent was NULL)--> open
    pending/open --close--> closed   (the next message opens a new row)

At most one pending/open conversation exists per (tenant, target). The
partial unique index uq_conversations_active_target enforces it; callers
that lose the insert race read back the winner's row. Claims are a single
conditional UPDATE, so two agents can never both win.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.errors import InternalError, NotFoundError
from app.models import ACTIVE_STATUSES, Conversation, ConversationStatus
from app.utils import utc_now_iso

logger = logging.getLogger(__name__)

# Attempts when the row we collided with was closed before we could read it
MAX_CREATE_ATTEMPTS = 3


@dataclass(frozen=True)
class ConversationTarget:
    """Exactly one of contact_id / group_id."""
    contact_id: Optional[str] = None
    group_id: Optional[str] = None

    def __post_init__(self):
        if (self.contact_id is None) == (self.group_id is None):
            raise ValueError("a conversation target needs exactly one of contact_id or group_id")

    @property
    def key(self) -> str:
        if self.contact_id is not None:
            return f"contact:{self.contact_id}"
        return f"group:{self.group_id}"


@dataclass(frozen=True)
class ClaimResult:
    conversation: Conversation
    claimed: bool
    assigned_agent_id: Optional[str]


def get_active_conversation(db: Session, tenant_id: str, target: ConversationTarget) -> Optional[Conversation]:
    return (
        db.query(Conversation)
        .filter(
            Conversation.tenant_id == tenant_id,
            Conversation.target_key == target.key,
            Conversation.status.in_(ACTIVE_STATUSES),
        )
        .first()
    )


def get_conversation(db: Session, conversation_id: str) -> Conversation:
    try:
        conversation = db.get(Conversation, conversation_id)
    except SQLAlchemyError as e:
        raise InternalError("conversation lookup failed") from e
    if conversation is None:
        raise NotFoundError(f"conversation not found: {conversation_id}")
    return conversation


def find_or_create_active(
    db: Session,
    tenant_id: str,
    instance_id: str,
    target: ConversationTarget,
    queue_id: Optional[str] = None,
) -> Conversation:
    """
    Return the active conversation for a target, creating a pending one
    in ``queue_id`` (the instance's default queue).

    Safe under concurrent callers: the losing INSERT violates the partial
    unique index and the loser returns the row that won.
    """
    try:
        for attempt in range(1, MAX_CREATE_ATTEMPTS + 1):
            existing = get_active_conversation(db, tenant_id, target)
            if existing is not None:
                return existing

            now = utc_now_iso()
            conversation = Conversation(
                tenant_id=tenant_id,
                instance_id=instance_id,
                contact_id=target.contact_id,
                group_id=target.group_id,
                target_key=target.key,
                status=ConversationStatus.PENDING.value,
                queue_id=queue_id,
                unread_count=0,
                message_count=0,
                created_at=now,
                updated_at=now,
            )
            db.add(conversation)
            try:
                db.commit()
                logger.info(f"Created conversation {conversation.id} for {target.key}")
                return conversation
            except IntegrityError:
                db.rollback()
                logger.info(f"Concurrent create for {target.key}, reusing winner (attempt {attempt})")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to find or create conversation for {target.key}: {e}")
        raise InternalError("failed to route conversation") from e

    raise InternalError(f"could not settle an active conversation for {target.key}")


def claim(db: Session, conversation_id: str, agent_id: str) -> ClaimResult:
    """
    Assign an unassigned active conversation to ``agent_id`` and open it.

    If someone else already holds it the call changes nothing and reports
    the current assignee; it never reassigns.
    """
    try:
        result = db.execute(
            update(Conversation)
            .where(
                Conversation.id == conversation_id,
                Conversation.assigned_agent_id.is_(None),
                Conversation.status.in_(ACTIVE_STATUSES),
            )
            .values(
                assigned_agent_id=agent_id,
                status=ConversationStatus.OPEN.value,
                updated_at=utc_now_iso(),
            )
        )
        won = result.rowcount == 1
        db.commit()

        conversation = get_conversation(db, conversation_id)
        db.refresh(conversation)

        if not won and conversation.assigned_agent_id == agent_id:
            # Re-claim by the holder: promote pending to open
            if conversation.status == ConversationStatus.PENDING.value:
                db.execute(
                    update(Conversation)
                    .where(
                        Conversation.id == conversation_id,
                        Conversation.status == ConversationStatus.PENDING.value,
                    )
                    .values(status=ConversationStatus.OPEN.value, updated_at=utc_now_iso())
                )
                db.commit()
                db.refresh(conversation)
            won = True
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to claim conversation {conversation_id}: {e}")
        raise InternalError("failed to claim conversation") from e

    if won:
        logger.info(f"Conversation {conversation_id} claimed by {agent_id}")
    else:
        logger.info(
            f"Claim by {agent_id} ignored, conversation {conversation_id} "
            f"held by {conversation.assigned_agent_id} (status={conversation.status})"
        )
    return ClaimResult(
        conversation=conversation,
        claimed=won,
        assigned_agent_id=conversation.assigned_agent_id,
    )


def close(db: Session, conversation_id: str) -> Conversation:
    """Close a conversation. Closing a closed conversation is a no-op."""
    try:
        now = utc_now_iso()
        db.execute(
            update(Conversation)
            .where(
                Conversation.id == conversation_id,
                Conversation.status.in_(ACTIVE_STATUSES),
            )
            .values(status=ConversationStatus.CLOSED.value, closed_at=now, updated_at=now)
        )
        db.commit()
        conversation = get_conversation(db, conversation_id)
        db.refresh(conversation)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to close conversation {conversation_id}: {e}")
        raise InternalError("failed to close conversation") from e

    logger.info(f"Conversation {conversation_id} is {conversation.status}")
    return conversation
