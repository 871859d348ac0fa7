"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.

Timestamps are ISO-8601 UTC strings (see app.utils.TIMESTAMP_FORMAT).
"""

from enum import Enum

from sqlalchemy import (
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Boolean,
    text,
)

from app.storage import Base
from app.utils import new_id


class InstanceStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class ConversationStatus(str, Enum):
    PENDING = "pending"
    OPEN = "open"
    CLOSED = "closed"


ACTIVE_STATUSES = (ConversationStatus.PENDING.value, ConversationStatus.OPEN.value)


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"
    SYSTEM = "system"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"
    STICKER = "sticker"
    REACTION = "reaction"


class TriggerKind(str, Enum):
    ANALYSIS = "analysis"
    TRANSCRIPTION = "transcription"
    FORWARD = "forward"


class OutboxStatus(str, Enum):
    PENDING = "pending"
    DISPATCHING = "dispatching"
    DELIVERED = "delivered"
    FAILED = "failed"


class Instance(Base):
    """
    A configured channel session. Owned by the connection manager;
    ingestion reads it and applies connection-status events.
    """
    __tablename__ = "instances"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False, unique=True, index=True)
    status = Column(String, nullable=False, default=InstanceStatus.DISCONNECTED.value)
    credential = Column(String, nullable=True)
    tenant_id = Column(String, nullable=False, index=True)
    server_url = Column(String, nullable=True)
    webhook_url = Column(String, nullable=True)  # Receives a copy of every newly stored message event
    default_queue_id = Column(String, nullable=True)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)


class Contact(Base):
    __tablename__ = "contacts"
    __table_args__ = (
        UniqueConstraint("tenant_id", "remote_id", name="uq_contacts_tenant_remote"),
    )

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False)
    instance_id = Column(String, ForeignKey("instances.id"), nullable=True)
    remote_id = Column(String, nullable=False)
    push_name = Column(String, nullable=True)
    avatar_url = Column(Text, nullable=True)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)


class Group(Base):
    __tablename__ = "groups"
    __table_args__ = (
        UniqueConstraint("tenant_id", "remote_id", name="uq_groups_tenant_remote"),
    )

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False)
    instance_id = Column(String, ForeignKey("instances.id"), nullable=True)
    remote_id = Column(String, nullable=False)
    name = Column(String, nullable=True)
    picture_url = Column(Text, nullable=True)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)


class GroupMember(Base):
    __tablename__ = "group_members"
    __table_args__ = (
        UniqueConstraint("group_id", "remote_id", name="uq_group_members_group_remote"),
    )

    id = Column(String, primary_key=True, default=new_id)
    group_id = Column(String, ForeignKey("groups.id"), nullable=False)
    remote_id = Column(String, nullable=False)
    push_name = Column(String, nullable=True)
    avatar_url = Column(Text, nullable=True)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)


class Conversation(Base):
    """
    One interaction with a contact or a group.

    target_key is "contact:<id>" or "group:<id>". The partial unique index
    allows a single pending/open row per (tenant, target); closed rows are
    unconstrained, so a target accumulates closed history.
    """
    __tablename__ = "conversations"
    __table_args__ = (
        CheckConstraint(
            "(contact_id IS NULL) <> (group_id IS NULL)",
            name="ck_conversations_single_target",
        ),
        Index(
            "uq_conversations_active_target",
            "tenant_id",
            "target_key",
            unique=True,
            sqlite_where=text("status IN ('pending', 'open')"),
            postgresql_where=text("status IN ('pending', 'open')"),
        ),
    )

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False, index=True)
    instance_id = Column(String, ForeignKey("instances.id"), nullable=False)
    contact_id = Column(String, ForeignKey("contacts.id"), nullable=True, index=True)
    group_id = Column(String, ForeignKey("groups.id"), nullable=True, index=True)
    target_key = Column(String, nullable=False)
    status = Column(String, nullable=False, default=ConversationStatus.PENDING.value)
    queue_id = Column(String, nullable=True, index=True)
    assigned_agent_id = Column(String, nullable=True)
    unread_count = Column(Integer, nullable=False, default=0)
    message_count = Column(Integer, nullable=False, default=0)
    last_message_body = Column(Text, nullable=True)
    last_message_direction = Column(String, nullable=True)
    last_message_at = Column(String, nullable=True)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)
    closed_at = Column(String, nullable=True)


class Message(Base):
    """
    Append-only message record.

    external_id is the provider dedup id. It is unique per instance: the
    same WhatsApp id is seen by every instance in the chat, but a redelivery
    to one instance is a no-op.
    """
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("instance_id", "external_id", name="uq_messages_instance_external"),
    )

    id = Column(String, primary_key=True, default=new_id)
    conversation_id = Column(String, ForeignKey("conversations.id"), nullable=False, index=True)
    instance_id = Column(String, ForeignKey("instances.id"), nullable=False)
    external_id = Column(String, nullable=False, index=True)
    direction = Column(String, nullable=False)
    body = Column(Text, nullable=False, default="")
    media_url = Column(Text, nullable=True)
    message_type = Column(String, nullable=False, default=MessageType.TEXT.value)
    sender_name = Column(String, nullable=True)
    sender_remote_id = Column(String, nullable=True)
    sender_avatar_url = Column(Text, nullable=True)
    reply_to_id = Column(String, nullable=True)  # external_id of the quoted message
    quoted_body = Column(Text, nullable=True)
    quoted_sender = Column(String, nullable=True)
    sent_at = Column(String, nullable=True)  # Provider time, when supplied
    created_at = Column(String, nullable=False, index=True)  # Server time


class TriggerOutbox(Base):
    """
    Durable record of a downstream trigger, written in the same transaction
    as the message that caused it and delivered by app.outbox.
    """
    __tablename__ = "trigger_outbox"

    id = Column(String, primary_key=True, default=new_id)
    kind = Column(String, nullable=False)
    conversation_id = Column(String, ForeignKey("conversations.id"), nullable=False)
    message_id = Column(String, ForeignKey("messages.id"), nullable=True)
    target_url = Column(String, nullable=True)  # Overrides the configured endpoint for the kind
    payload = Column(Text, nullable=False)
    status = Column(String, nullable=False, default=OutboxStatus.PENDING.value, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(String, nullable=False, index=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)
