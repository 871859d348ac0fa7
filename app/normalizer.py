"""
Event Normalizer: validates raw provider payloads and maps them onto the
canonical envelope (app.envelopes).

Event names arrive in several casings and separators ("messages.upsert",
"MESSAGES_UPSERT", "messages"). They are canonicalized and looked up in a
closed table; anything outside the table becomes an UnrecognizedEnvelope.
"""

import logging
import re
from enum import Enum
from typing import Any, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.envelopes import (
    Attachment,
    CanonicalEnvelope,
    ConnectionEnvelope,
    ContextInfo,
    EvolutionPayload,
    MessageEnvelope,
    UazapiContent,
    UazapiPayload,
    UnrecognizedEnvelope,
)
from app.errors import AuthError, InternalError, NotFoundError, ValidationError
from app.models import Instance, InstanceStatus, MessageType
from app.utils import digits_only, epoch_to_iso

logger = logging.getLogger(__name__)

GROUP_SUFFIX = "@g.us"


class EventKind(str, Enum):
    CONNECTION = "connection"
    MESSAGE = "message"
    UNRECOGNIZED = "unrecognized"


EVENT_KINDS = {
    "messages": EventKind.MESSAGE,
    "message": EventKind.MESSAGE,
    "messages_upsert": EventKind.MESSAGE,
    "connection": EventKind.CONNECTION,
    "connection_update": EventKind.CONNECTION,
}

MESSAGE_KINDS = {
    "text": MessageType.TEXT,
    "conversation": MessageType.TEXT,
    "extendedtextmessage": MessageType.TEXT,
    "image": MessageType.IMAGE,
    "imagemessage": MessageType.IMAGE,
    "audio": MessageType.AUDIO,
    "ptt": MessageType.AUDIO,
    "audiomessage": MessageType.AUDIO,
    "video": MessageType.VIDEO,
    "videomessage": MessageType.VIDEO,
    "document": MessageType.DOCUMENT,
    "documentmessage": MessageType.DOCUMENT,
    "sticker": MessageType.STICKER,
    "stickermessage": MessageType.STICKER,
    "reaction": MessageType.REACTION,
    "reactionmessage": MessageType.REACTION,
}

CONNECTED_STATES = {"open", "connected"}


def classify_event(name: str) -> EventKind:
    key = re.sub(r"[.\-\s]+", "_", name.strip().lower())
    return EVENT_KINDS.get(key, EventKind.UNRECOGNIZED)


def map_message_kind(declared: Optional[str]) -> Tuple[MessageType, bool]:
    """
    Map a provider message kind onto MessageType.

    Returns (type, recognized). A missing kind is plain text; an unknown
    kind falls back to text and is flagged as unrecognized.
    """
    if not declared:
        return MessageType.TEXT, True
    kind = MESSAGE_KINDS.get(declared.strip().lower())
    if kind is None:
        return MessageType.TEXT, False
    return kind, True


def map_connection_state(state: Optional[str]) -> InstanceStatus:
    if state and state.strip().lower() in CONNECTED_STATES:
        return InstanceStatus.CONNECTED
    return InstanceStatus.DISCONNECTED


def normalize_remote_id(jid: str) -> Tuple[str, bool]:
    """
    Reduce a channel address to the stored remote identifier.

    Group JIDs are kept whole; individual JIDs keep only their digits
    ("5537999990000@s.whatsapp.net" -> "5537999990000").
    """
    value = jid.strip()
    if value.endswith(GROUP_SUFFIX):
        return value, True
    local = value.split("@", 1)[0]
    return digits_only(local) or local, False


def _first_text(*candidates: Optional[str]) -> str:
    for candidate in candidates:
        if candidate and candidate.strip():
            return candidate
    return ""


def reply_context(context: Optional[ContextInfo], quoted_id: Optional[str] = None) -> dict:
    """Envelope fields for a message that quotes an earlier one."""
    if context is None:
        return {}
    quoted = context.quoted_message
    return {
        "reply_to_id": context.stanza_id or quoted_id,
        "quoted_body": quoted.body if quoted else None,
        "quoted_sender": normalize_remote_id(context.participant)[0] if context.participant else None,
    }


# =============================================================================
# Instance registry
# =============================================================================

def get_active_instance(db: Session, name: str) -> Instance:
    """Look up an instance by channel name, raising NotFoundError if unusable."""
    try:
        instance = db.query(Instance).filter(Instance.name == name).first()
    except SQLAlchemyError as e:
        logger.error(f"Instance lookup failed for {name}: {e}")
        raise InternalError("instance lookup failed") from e

    if instance is None:
        raise NotFoundError(f"instance not found: {name}")
    if not instance.enabled:
        raise NotFoundError(f"instance is not active: {name}")
    return instance


def _check_credential(instance: Instance, provided: Optional[str]) -> None:
    if provided is None:
        return
    if not instance.credential or provided != instance.credential:
        raise AuthError("invalid channel credential")


# =============================================================================
# Provider adapters
# =============================================================================

def _normalize_uazapi(payload: UazapiPayload, instance: Instance) -> CanonicalEnvelope:
    kind = classify_event(payload.event_type)
    base = {
        "event_name": payload.event_type,
        "instance_id": instance.id,
        "tenant_id": instance.tenant_id,
    }

    if kind is EventKind.CONNECTION:
        return ConnectionEnvelope(status=map_connection_state(payload.status or payload.state), **base)

    if kind is EventKind.UNRECOGNIZED:
        return UnrecognizedEnvelope(**base)

    message = payload.message
    if message is None:
        raise ValidationError("message event without message")

    dedup_id = message.messageid or message.id
    if not dedup_id:
        raise ValidationError("message id is required")

    chat = payload.chat
    jid = (chat.wa_chatid if chat else None) or message.chatid
    if not jid:
        raise ValidationError("chat id is required")
    remote_id, looks_like_group = normalize_remote_id(jid)
    is_group = message.is_group or looks_like_group

    message_type, recognized = map_message_kind(message.message_type)
    content = message.content if isinstance(message.content, UazapiContent) else None
    content_text = message.content if isinstance(message.content, str) else None

    if recognized:
        body = _first_text(
            message.text,
            content_text,
            content.text if content else None,
            content.caption if content else None,
            content.file_name if content else None,
        )
    else:
        logger.warning(f"Unrecognized message kind {message.message_type!r}, stored as empty text")
        body = ""

    attachment = None
    if recognized and content and (content.url or content.base64):
        attachment = Attachment(
            url=content.url,
            data=None if content.url else content.base64,
            mime_type=content.mimetype,
            file_name=content.file_name,
        )

    reply = reply_context(
        content.context_info if content else None,
        message.quoted if isinstance(message.quoted, str) else None,
    )

    if is_group:
        raw_sender = message.sender_pn or message.sender
        sender_id = normalize_remote_id(raw_sender)[0] if raw_sender else None
        sender_name = message.sender_name
        chat_name = (chat.name if chat else None) or message.group_name
    else:
        sender_id = remote_id
        sender_name = (chat.name if chat else None) or message.sender_name
        chat_name = chat.name if chat else None

    return MessageEnvelope(
        dedup_id=dedup_id,
        remote_id=remote_id,
        is_group=is_group,
        sender_id=sender_id,
        sender_name=sender_name,
        from_me=message.from_me,
        message_type=message_type,
        body=body,
        attachment=attachment,
        chat_name=chat_name,
        chat_avatar_url=(chat.image or chat.image_preview) if chat else None,
        sent_at=epoch_to_iso(message.message_timestamp),
        **reply,
        **base,
    )


def _normalize_evolution(payload: EvolutionPayload, instance: Instance) -> CanonicalEnvelope:
    kind = classify_event(payload.event)
    data = payload.data
    base = {
        "event_name": payload.event,
        "instance_id": instance.id,
        "tenant_id": instance.tenant_id,
    }

    if kind is EventKind.CONNECTION:
        return ConnectionEnvelope(status=map_connection_state(data.state or data.status), **base)

    if kind is EventKind.UNRECOGNIZED:
        return UnrecognizedEnvelope(**base)

    key = data.key
    if key is None or not key.id:
        raise ValidationError("message id is required")
    if not key.remote_jid:
        raise ValidationError("remoteJid is required")

    remote_id, is_group = normalize_remote_id(key.remote_jid)
    message_type, recognized = map_message_kind(data.message_type)
    message = data.message

    body = ""
    attachment = None
    context = data.context_info
    if not recognized:
        logger.warning(f"Unrecognized message kind {data.message_type!r}, stored as empty text")
    elif message is not None:
        media = message.media_parts()
        body = _first_text(
            message.conversation,
            message.extended_text_message.text if message.extended_text_message else None,
            *(part.caption for part in media),
            *(part.file_name for part in media),
        )
        if context is None and message.extended_text_message:
            context = message.extended_text_message.context_info
        part = media[0] if media else None
        if part is not None and (part.url or message.base64):
            # Inline bytes are preferred: provider media URLs are encrypted
            attachment = Attachment(
                url=None if message.base64 else part.url,
                data=message.base64,
                mime_type=part.mimetype,
                file_name=part.file_name,
            )

    if is_group:
        sender_id = normalize_remote_id(key.participant)[0] if key.participant else None
    else:
        sender_id = remote_id

    return MessageEnvelope(
        dedup_id=key.id,
        remote_id=remote_id,
        is_group=is_group,
        sender_id=sender_id,
        sender_name=data.push_name,
        from_me=key.from_me,
        message_type=message_type,
        body=body,
        attachment=attachment,
        chat_name=None if is_group or key.from_me else data.push_name,
        sent_at=epoch_to_iso(data.message_timestamp),
        **reply_context(context),
        **base,
    )


# =============================================================================
# Entry point
# =============================================================================

def normalize(db: Session, raw_payload: Any) -> CanonicalEnvelope:
    """
    Validate a raw provider payload and return its canonical envelope.

    Raises:
        ValidationError: payload matches no provider shape or lacks a
            required field
        NotFoundError: the instance is unknown or disabled
        AuthError: the payload carries a token that does not match the
            instance credential
    """
    if not isinstance(raw_payload, dict):
        raise ValidationError("payload must be a JSON object")

    try:
        if "EventType" in raw_payload:
            payload = UazapiPayload.model_validate(raw_payload)
            instance = get_active_instance(db, payload.instance_name)
            _check_credential(instance, payload.token)
            envelope = _normalize_uazapi(payload, instance)
        elif "event" in raw_payload:
            payload = EvolutionPayload.model_validate(raw_payload)
            instance = get_active_instance(db, payload.instance)
            _check_credential(instance, payload.apikey)
            envelope = _normalize_evolution(payload, instance)
        else:
            raise ValidationError("unrecognized payload shape")
    except PydanticValidationError as e:
        raise ValidationError(f"malformed payload: {e.errors()[0]['msg']}") from e

    logger.debug(f"Normalized {envelope.kind} event for instance {envelope.instance_id}")
    return envelope
