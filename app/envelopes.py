"""
Provider payload shapes and the canonical envelope they are normalized into.

Two provider families post to the webhook:

- UAZAPI style: {"EventType", "instanceName", "token", "message", "chat"}
- Evolution style: {"event", "instance", "apikey", "data"}

Both are parsed leniently (unknown keys ignored) and then mapped by
app.normalizer onto one of the canonical envelope variants below.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from app.models import Direction, InstanceStatus, MessageType


class _ProviderModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# =============================================================================
# Quoted-reply context (shared by both providers)
# =============================================================================

class QuotedText(_ProviderModel):
    text: Optional[str] = None


class QuotedMessage(_ProviderModel):
    conversation: Optional[str] = None
    extended_text_message: Optional[QuotedText] = Field(None, alias="extendedTextMessage")

    @property
    def body(self) -> Optional[str]:
        if self.conversation:
            return self.conversation
        if self.extended_text_message:
            return self.extended_text_message.text
        return None


class ContextInfo(_ProviderModel):
    stanza_id: Optional[str] = Field(None, validation_alias=AliasChoices("stanzaId", "stanzaID"))
    participant: Optional[str] = None
    quoted_message: Optional[QuotedMessage] = Field(None, alias="quotedMessage")


# =============================================================================
# UAZAPI style payloads
# =============================================================================

class UazapiContent(_ProviderModel):
    text: Optional[str] = None
    caption: Optional[str] = None
    file_name: Optional[str] = Field(None, alias="fileName")
    url: Optional[str] = Field(None, alias="URL")
    mimetype: Optional[str] = None
    base64: Optional[str] = None
    context_info: Optional[ContextInfo] = Field(None, alias="contextInfo")


class UazapiMessage(_ProviderModel):
    messageid: Optional[str] = None
    id: Optional[str] = None
    chatid: Optional[str] = None
    from_me: bool = Field(False, alias="fromMe")
    is_group: bool = Field(False, alias="isGroup")
    sender: Optional[str] = None
    sender_pn: Optional[str] = None
    sender_name: Optional[str] = Field(None, alias="senderName")
    group_name: Optional[str] = Field(None, alias="groupName")
    message_type: Optional[str] = Field(None, alias="messageType")
    text: Optional[str] = None
    content: Union[UazapiContent, str, None] = None
    quoted: Union[str, dict, None] = None
    message_timestamp: Union[int, float, str, None] = Field(None, alias="messageTimestamp")


class UazapiChat(_ProviderModel):
    wa_chatid: Optional[str] = None
    name: Optional[str] = None
    image: Optional[str] = None
    image_preview: Optional[str] = Field(None, alias="imagePreview")


class UazapiPayload(_ProviderModel):
    event_type: str = Field(..., alias="EventType", min_length=1)
    instance_name: str = Field(..., alias="instanceName", min_length=1)
    token: Optional[str] = None
    message: Optional[UazapiMessage] = None
    chat: Optional[UazapiChat] = None
    status: Optional[str] = None
    state: Optional[str] = None


# =============================================================================
# Evolution style payloads
# =============================================================================

class EvolutionKey(_ProviderModel):
    remote_jid: Optional[str] = Field(None, alias="remoteJid")
    from_me: bool = Field(False, alias="fromMe")
    id: Optional[str] = None
    participant: Optional[str] = None


class EvolutionMediaMessage(_ProviderModel):
    text: Optional[str] = None
    url: Optional[str] = None
    caption: Optional[str] = None
    mimetype: Optional[str] = None
    file_name: Optional[str] = Field(None, alias="fileName")
    context_info: Optional[ContextInfo] = Field(None, alias="contextInfo")


class EvolutionMessage(_ProviderModel):
    conversation: Optional[str] = None
    extended_text_message: Optional[EvolutionMediaMessage] = Field(None, alias="extendedTextMessage")
    image_message: Optional[EvolutionMediaMessage] = Field(None, alias="imageMessage")
    audio_message: Optional[EvolutionMediaMessage] = Field(None, alias="audioMessage")
    video_message: Optional[EvolutionMediaMessage] = Field(None, alias="videoMessage")
    document_message: Optional[EvolutionMediaMessage] = Field(None, alias="documentMessage")
    sticker_message: Optional[EvolutionMediaMessage] = Field(None, alias="stickerMessage")
    base64: Optional[str] = None

    def media_parts(self) -> list:
        return [
            part for part in (
                self.image_message,
                self.audio_message,
                self.video_message,
                self.document_message,
                self.sticker_message,
            )
            if part is not None
        ]


class EvolutionData(_ProviderModel):
    key: Optional[EvolutionKey] = None
    push_name: Optional[str] = Field(None, alias="pushName")
    message: Optional[EvolutionMessage] = None
    message_type: Optional[str] = Field(None, alias="messageType")
    message_timestamp: Union[int, float, str, None] = Field(None, alias="messageTimestamp")
    context_info: Optional[ContextInfo] = Field(None, alias="contextInfo")
    state: Optional[str] = None
    status: Optional[str] = None


class EvolutionPayload(_ProviderModel):
    event: str = Field(..., min_length=1)
    instance: str = Field(..., min_length=1)
    apikey: Optional[str] = None
    data: EvolutionData = Field(default_factory=EvolutionData)


# =============================================================================
# Canonical envelope
# =============================================================================

class Attachment(BaseModel):
    """Either a remote URL or inline base64 bytes, with optional hints."""
    url: Optional[str] = None
    data: Optional[str] = None
    mime_type: Optional[str] = None
    file_name: Optional[str] = None


class MessageEnvelope(BaseModel):
    kind: Literal["message"] = "message"
    event_name: str
    instance_id: str
    tenant_id: str
    dedup_id: str
    remote_id: str
    is_group: bool = False
    sender_id: Optional[str] = None
    sender_name: Optional[str] = None
    from_me: bool = False
    message_type: MessageType = MessageType.TEXT
    body: str = ""
    attachment: Optional[Attachment] = None
    chat_name: Optional[str] = None
    chat_avatar_url: Optional[str] = None
    sent_at: Optional[str] = None
    reply_to_id: Optional[str] = None
    quoted_body: Optional[str] = None
    quoted_sender: Optional[str] = None

    @property
    def direction(self) -> Direction:
        return Direction.OUTBOUND if self.from_me else Direction.INBOUND


class ConnectionEnvelope(BaseModel):
    kind: Literal["connection"] = "connection"
    event_name: str
    instance_id: str
    tenant_id: str
    status: InstanceStatus


class UnrecognizedEnvelope(BaseModel):
    kind: Literal["unrecognized"] = "unrecognized"
    event_name: str
    instance_id: str
    tenant_id: str


CanonicalEnvelope = Annotated[
    Union[MessageEnvelope, ConnectionEnvelope, UnrecognizedEnvelope],
    Field(discriminator="kind"),
]
