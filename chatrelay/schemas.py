"""
Pydantic schemas for domain objects and request/response validation.

This module contains:
- Domain models shared by the store, hub and dispatcher (Message, Channel)
- Request models for incoming HTTP and WebSocket data
- Response models for API responses
"""

from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Domain Models
# =============================================================================

class ChannelKind(str, Enum):
    TEXT = "text"
    VOICE = "voice"


class ParentKind(str, Enum):
    CHAT = "chat"
    GROUP = "group"


class Message(BaseModel):
    """
    A persisted chat message. Immutable once created.

    seq is assigned by the message store at append time and is strictly
    increasing and gapless per channel.
    """
    id: str = Field(..., description="Opaque message identifier")
    channel_id: str = Field(..., description="Channel the message belongs to")
    sender_id: str = Field(..., description="User who posted the message")
    content: str = Field(..., description="Message text content")
    seq: int = Field(..., ge=1, description="Per-channel sequence number")
    created_at: str = Field(..., description="Server time, ISO-8601 UTC")

    model_config = ConfigDict(frozen=True, from_attributes=True)


class Channel(BaseModel):
    id: str
    parent_id: str
    name: str
    kind: ChannelKind
    created_at: str

    model_config = ConfigDict(frozen=True, from_attributes=True)


class Parent(BaseModel):
    """A chat or group that owns channels and membership."""
    id: str
    name: str
    kind: ParentKind
    owner_id: str
    created_at: str

    model_config = ConfigDict(frozen=True, from_attributes=True)


# =============================================================================
# Request Models
# =============================================================================

class PostMessageRequest(BaseModel):
    """Body of POST /channels/{channel_id}/messages."""
    content: str = Field(..., description="Message text content")


class ClientFrame(BaseModel):
    """
    Frame sent by a WebSocket client.

    - subscribe: channel_id, last_seen_seq (defaults to 0)
    - unsubscribe: channel_id
    - post: channel_id, content
    - ping
    """
    type: Literal["subscribe", "unsubscribe", "post", "ping"]
    channel_id: Optional[str] = None
    last_seen_seq: int = 0
    content: Optional[str] = None


# =============================================================================
# Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")
    code: str = Field(..., description="Machine-readable error code")


class MessagesListResponse(BaseModel):
    """
    Response model for GET /channels/{channel_id}/messages.

    data holds messages with seq > after_seq in ascending order, at most
    limit of them. last_seq is the channel's latest seq at read time.
    """
    data: list[Message] = Field(default_factory=list, description="Messages")
    channel_id: str
    after_seq: int = Field(..., ge=0)
    limit: int = Field(..., ge=1)
    last_seq: int = Field(..., ge=0)


class ChannelsListResponse(BaseModel):
    data: list[Channel] = Field(default_factory=list)
    parent_id: str


class StatsResponse(BaseModel):
    """Delivery-side counters for GET /stats."""
    total_messages: int = Field(..., ge=0)
    connections: int = Field(..., ge=0)
    subscriptions: int = Field(..., ge=0)
    channels_with_subscribers: int = Field(..., ge=0)
    pending_frames: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
