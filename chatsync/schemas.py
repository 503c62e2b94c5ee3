"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming API calls
- Response models for API responses
- Provider payload models for the messaging provider's JSON
"""

from typing import Optional

from pydantic import BaseModel, Field


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SyncRequest(BaseModel):
    """
    Body of POST /sync.

    Validates:
    - subject_id: non-empty string
    - max_conversations: optional per-run cap override (clamped server-side)
    """
    subject_id: str = Field(
        ...,
        min_length=1,
        description="Subject (child) whose connected account should be synced"
    )
    max_conversations: Optional[int] = Field(
        None,
        ge=1,
        description="Process at most this many conversations in this run"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"subject_id": "7f6c1a52-1f7e-4b8e-9b1e-3c0c9a1d2e10", "max_conversations": 5}
            ]
        }
    }


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class SkippedItemResponse(BaseModel):
    """One conversation or message the run skipped, with the reason."""
    kind: str = Field(..., description="'conversation' or 'message'")
    ref: str = Field(..., description="Provider chat id, message id or timestamp")
    reason: str = Field(..., description="Why the item was skipped")


class SyncResponse(BaseModel):
    """
    Summary of one sync run.

    A run that stopped early on its time budget is still a success:
    budget_exhausted is true and the counts reflect what was imported.
    """
    success: bool = Field(default=True)
    conversations_processed: int = Field(..., ge=0)
    messages_imported: int = Field(..., ge=0)
    total_conversations_available: int = Field(..., ge=0)
    budget_exhausted: bool = Field(default=False)
    elapsed_ms: int = Field(..., ge=0)
    skipped: list[SkippedItemResponse] = Field(default_factory=list)


class MessageResponse(BaseModel):
    """A stored message as shown in list views."""
    id: str
    conversation_id: str
    conversation_name: str
    sender_label: str
    is_subject_sender: bool
    msg_type: str
    message_timestamp: str
    text_content: Optional[str] = None
    text_excerpt: Optional[str] = None
    media_url: Optional[str] = None


class MessagesListResponse(BaseModel):
    """
    Response model for GET /subjects/{subject_id}/messages with pagination.

    Contains:
    - data: list of messages matching filters
    - total: total count of messages matching filters (ignoring pagination)
    - limit: number of messages per page
    - offset: starting position
    """
    data: list[MessageResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    limit: int = Field(..., ge=1, le=100)
    offset: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


# =============================================================================
# Provider Payload Models
# =============================================================================

_PROVIDER_CONFIG = {"populate_by_name": True, "extra": "ignore"}


class RemoteConversation(BaseModel):
    """An entry from the provider's chat listing."""
    id: str
    name: Optional[str] = None
    type: Optional[str] = None
    last_message_time: Optional[int] = Field(None, alias="lastMessageTime")

    model_config = _PROVIDER_CONFIG

    @property
    def is_group(self) -> bool:
        return self.type == "group" or self.id.endswith("@g.us")


class RemoteMessage(BaseModel):
    """A message from the provider's chat history."""
    id_message: Optional[str] = Field(None, alias="idMessage")
    timestamp: int
    type: Optional[str] = None
    type_message: Optional[str] = Field(None, alias="typeMessage")
    chat_id: Optional[str] = Field(None, alias="chatId")
    sender_id: Optional[str] = Field(None, alias="senderId")
    sender_name: Optional[str] = Field(None, alias="senderName")
    text_message: Optional[str] = Field(None, alias="textMessage")
    caption: Optional[str] = None
    from_me: Optional[bool] = Field(None, alias="fromMe")
    download_url: Optional[str] = Field(None, alias="downloadUrl")
    jpeg_thumbnail: Optional[str] = Field(None, alias="jpegThumbnail")

    model_config = _PROVIDER_CONFIG


class MediaLocation(BaseModel):
    """Response of the provider's media download resolution call."""
    download_url: Optional[str] = Field(None, alias="downloadUrl")

    model_config = _PROVIDER_CONFIG
