"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for the outbound compose and claim endpoints
- Response models for API responses

Provider webhook payloads live in envelopes.py.
"""

from typing import Optional

from pydantic import BaseModel, Field, model_validator

from app.models import MessageType


# =============================================================================
# Pydantic Request Models
# =============================================================================

class AttachmentRequest(BaseModel):
    """An attachment given either as a URL or as inline base64 bytes."""
    url: Optional[str] = Field(None, description="Public URL of the media")
    data: Optional[str] = Field(None, description="Base64 encoded media bytes")
    mime_type: Optional[str] = Field(None, description="Declared MIME type")
    file_name: Optional[str] = Field(None, description="Original file name")

    @model_validator(mode="after")
    def require_source(self) -> "AttachmentRequest":
        if not self.url and not self.data:
            raise ValueError("attachment needs a url or data")
        return self


class SendMessageRequest(BaseModel):
    """
    Agent-composed outbound message.

    `to` is a contact id, a group id, a group JID or a phone number.
    """
    instance: str = Field(..., min_length=1, description="Instance (channel) name")
    to: str = Field(..., min_length=1, description="Target contact/group id or phone number")
    body: str = Field("", max_length=4096, description="Message text")
    message_type: MessageType = Field(MessageType.TEXT, description="Message kind")
    attachment: Optional[AttachmentRequest] = None
    agent_id: Optional[str] = Field(None, description="Composing agent; claims an unassigned conversation")
    sender_name: Optional[str] = Field(None, description="Display name stored on the message")
    idempotency_key: Optional[str] = Field(
        None,
        min_length=1,
        description="Dedup id for retried compose calls"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "instance": "clinic-main",
                    "to": "5537999990000",
                    "body": "Olá! Como posso ajudar?",
                    "agent_id": "agent-a"
                }
            ]
        }
    }


class ClaimRequest(BaseModel):
    agent_id: str = Field(..., min_length=1, description="Agent claiming the conversation")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response model for successful webhook processing."""
    status: str = Field(default="ok", description="Operation status")
    result: Optional[str] = Field(None, description="created, duplicate, connection or ignored")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class ConversationResponse(BaseModel):
    id: str
    instance_id: str
    contact_id: Optional[str] = None
    group_id: Optional[str] = None
    status: str
    queue_id: Optional[str] = None
    assigned_agent_id: Optional[str] = None
    unread_count: int
    message_count: int
    last_message_body: Optional[str] = None
    last_message_direction: Optional[str] = None
    last_message_at: Optional[str] = None
    created_at: str
    updated_at: str
    closed_at: Optional[str] = None

    model_config = {"from_attributes": True}


class ConversationsListResponse(BaseModel):
    """
    Response model for GET /conversations with pagination.

    - data: conversations matching filters
    - total: total matching filters (ignoring pagination)
    """
    data: list[ConversationResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    limit: int = Field(..., ge=1, le=100)
    offset: int = Field(..., ge=0)


class MessageResponse(BaseModel):
    id: str
    conversation_id: str
    external_id: str
    direction: str
    body: str
    media_url: Optional[str] = None
    message_type: str
    sender_name: Optional[str] = None
    sender_remote_id: Optional[str] = None
    sender_avatar_url: Optional[str] = None
    reply_to_id: Optional[str] = None
    quoted_body: Optional[str] = None
    quoted_sender: Optional[str] = None
    sent_at: Optional[str] = None
    created_at: str

    model_config = {"from_attributes": True}


class MessagesListResponse(BaseModel):
    data: list[MessageResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    limit: int = Field(..., ge=1, le=100)
    offset: int = Field(..., ge=0)


class ClaimResponse(BaseModel):
    """Claim outcome; `claimed` is false when another agent already holds it."""
    conversation_id: str
    claimed: bool
    assigned_agent_id: Optional[str] = None
    status: str


class SendMessageResponse(BaseModel):
    conversation_id: str
    message_id: str
    created: bool
    media_url: Optional[str] = None


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
