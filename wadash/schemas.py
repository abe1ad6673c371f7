"""
Pydantic schemas for messages, request/response validation and push events.

This module contains:
- The Message record as fetched from the messaging API
- Request models for incoming data validation
- Response models for API responses
- Event envelopes sent over the WebSocket push channel
"""

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a message timestamp into a timezone-aware datetime.

    Accepts datetime objects, ISO-8601 strings (backup files) and RFC 2822
    strings (the messaging API's format). Naive values are taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            try:
                parsed = parsedate_to_datetime(value)
            except (TypeError, ValueError):
                raise ValueError(f"unrecognised timestamp: {value!r}")
    else:
        raise ValueError(f"unsupported timestamp type: {type(value).__name__}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# Message Record
# =============================================================================

class Message(BaseModel):
    """
    A single WhatsApp message as returned by the messaging API.

    Immutable once fetched. ``sid`` is globally unique and is the
    deduplication key for the cache.
    """
    sid: str = Field(..., min_length=1, description="Unique message identifier")
    # Note: 'from' is a reserved word in Python, so we use alias
    from_: str = Field(
        ...,
        alias="from",
        serialization_alias="from",
        description="Sender address, e.g. whatsapp:+5511999887766"
    )
    to: str = Field(..., description="Recipient address")
    body: Optional[str] = Field(None, description="Message text")
    status: Optional[str] = Field(None, description="Delivery status (queued, sent, delivered, failed, received, ...)")
    direction: str = Field(
        "inbound",
        description="inbound, outbound-api, outbound-call or outbound-reply"
    )
    date_sent: Optional[datetime] = Field(None, description="When the message was sent")
    date_created: Optional[datetime] = Field(None, description="When the message resource was created")
    price: Optional[str] = None
    price_unit: Optional[str] = None
    error_code: Optional[int] = None
    error_message: Optional[str] = None
    num_segments: Optional[str] = None
    num_media: Optional[str] = None

    @field_validator("date_sent", "date_created", mode="before")
    @classmethod
    def validate_timestamp(cls, v: Any) -> Optional[datetime]:
        """Accept RFC 2822 and ISO-8601 timestamps."""
        return parse_timestamp(v)

    @field_validator("num_segments", "num_media", mode="before")
    @classmethod
    def coerce_count(cls, v: Any) -> Optional[str]:
        return None if v is None else str(v)

    model_config = {
        "populate_by_name": True,
        "frozen": True,
        "json_schema_extra": {
            "examples": [
                {
                    "sid": "SM1234567890abcdef",
                    "from": "whatsapp:+5511999887766",
                    "to": "whatsapp:+14155238886",
                    "body": "Hello",
                    "status": "received",
                    "direction": "inbound",
                    "date_sent": "2025-01-15T10:00:00Z",
                    "date_created": "2025-01-15T10:00:00Z",
                }
            ]
        }
    }


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SyncRequest(BaseModel):
    """Body for POST /api/resync. ``days`` bounds the fetch window."""
    days: Optional[int] = Field(
        None,
        ge=1,
        le=3650,
        description="Look-back window in days (defaults to FULL_SYNC_DAYS)"
    )


class BlockNumberRequest(BaseModel):
    """
    Body for POST /api/block-number.

    ``phone_number`` is optional at the schema level so that a missing value
    is answered with a 400 and a readable message.
    """
    phone_number: Optional[str] = Field(None, description="Counterpart address to block or unblock")
    action: Literal["block", "unblock"] = Field("block", description="block or unblock")


class WsCommand(BaseModel):
    """Client -> server command on the push channel."""
    type: str  # request-full-update | check-new-messages


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class ConversationSummary(BaseModel):
    """One entry of the conversation list."""
    contact_number: str = Field(..., description="Counterpart address")
    last_message: Optional[str] = Field(None, description="Body of the most recent message")
    last_message_date: Optional[datetime] = Field(None, description="Effective timestamp of the most recent message")
    total_messages: int = Field(..., ge=0)
    is_blocked: bool = Field(False, description="Whether the counterpart is on the blocklist")


class ConversationsListResponse(BaseModel):
    """
    Response model for GET /api/conversations.

    Conversations are ordered by last_message_date, newest first; those
    without a timestamp come last.
    """
    conversations: list[ConversationSummary] = Field(default_factory=list)
    partition: str = Field("all", description="all, normal or blocked")
    total_messages: int = Field(..., ge=0, description="Messages in the cache")
    last_sync: Optional[datetime] = None
    is_live: bool = Field(..., description="False when serving demo data")


class ConversationMessagesResponse(BaseModel):
    """Response model for GET /api/conversation/{phone_number}."""
    contact_number: str
    messages: list[Message] = Field(default_factory=list, description="Oldest first")
    total_messages: int = Field(..., ge=0)
    aggregated: bool = Field(
        ...,
        description="False when the result came from a scan of the raw message cache"
    )


class CacheStatusResponse(BaseModel):
    """Response model for GET /api/cache-status."""
    messages_in_cache: int = Field(..., ge=0)
    conversations_in_cache: int = Field(..., ge=0)
    last_sync: Optional[datetime] = None
    last_attempt: Optional[datetime] = None
    is_updating: bool
    demo_mode: bool


class SyncResponse(BaseModel):
    """Response model for the resync endpoints."""
    status: Literal["ok", "skipped"] = "ok"
    mode: str
    added: int = Field(0, ge=0)
    total_messages: int = Field(..., ge=0)
    conversations: int = Field(..., ge=0)
    last_sync: Optional[datetime] = None


class ClearCacheResponse(BaseModel):
    """Response model for POST /api/clear-cache."""
    status: str = "ok"
    sync_started: bool


class BlockNumberResponse(BaseModel):
    """Response model for POST /api/block-number."""
    success: bool = True
    action: str
    phone_number: str
    total_blocked: int = Field(..., ge=0)
    blocked_numbers: list[str] = Field(default_factory=list)


class BlockedNumbersResponse(BaseModel):
    """Response model for GET /api/blocked-numbers."""
    count: int = Field(..., ge=0)
    numbers: list[str] = Field(default_factory=list)


class CheckBlockedResponse(BaseModel):
    """Response model for GET /api/check-blocked/{phone_number}."""
    phone_number: str
    is_blocked: bool
    timestamp: datetime


class ContactCount(BaseModel):
    """Model for per-contact message count in stats."""
    contact_number: str
    count: int = Field(..., ge=0)


class StatsResponse(BaseModel):
    """
    Response model for GET /api/stats.

    Provides message-level analytics over the cache:
    - total_messages: count of cached messages
    - conversations_count: number of distinct counterparts
    - messages_per_contact: top 10 counterparts by message count
    - by_direction / by_status: message counts per value
    - first_message_ts / last_message_ts: effective timestamp range
    """
    total_messages: int = Field(..., ge=0)
    conversations_count: int = Field(..., ge=0)
    messages_per_contact: list[ContactCount] = Field(default_factory=list)
    by_direction: dict[str, int] = Field(default_factory=dict)
    by_status: dict[str, int] = Field(default_factory=dict)
    first_message_ts: Optional[datetime] = None
    last_message_ts: Optional[datetime] = None


# =============================================================================
# Push Channel Events
# =============================================================================

class SyncEvent(BaseModel):
    """Server -> client event on the push channel."""
    type: str  # messages-updated | new-messages | sync-progress | number-blocked | ...
    data: dict[str, Any] = Field(default_factory=dict)
