"""Data models for the Tripp gateway.

Defines Pydantic models for API requests/responses and internal data structures.
"""
from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import AliasChoices, BaseModel, Field, ConfigDict


class ChatSession(BaseModel):
    """Server-side chat session row."""

    session_id: str = Field(..., description="Opaque external handle (unique)")
    user_id: Optional[str] = Field(None, description="SSO subject; None for guests")
    client_id: Optional[str] = Field(None, description="Calling client, e.g. webchat")
    tier: str = Field(default="free", description="Plan tier from the identity token")
    device_hash: Optional[str] = Field(None, description="sha256(ua_hash:ip_hash)")
    ua_hash: Optional[str] = Field(None, description="sha256 of the user agent")
    ip_hash: Optional[str] = Field(None, description="sha256 of the /24 client network")
    jti: Optional[str] = None
    kid: Optional[str] = None
    iss: Optional[str] = None
    aud: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    last_seen: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "session_id": "9f2c4e0b7a1d4c3e8b6a5f4e3d2c1b0a",
                "user_id": "42",
                "client_id": "webchat",
                "tier": "free",
                "device_hash": "ab12...",
                "created_at": "2025-11-01T00:00:00Z",
                "updated_at": "2025-11-01T00:00:00Z",
                "expires_at": "2025-11-02T00:00:00Z",
            }
        }
    )

    @property
    def revoked(self) -> bool:
        return self.revoked_at is not None


class AuditRecord(BaseModel):
    """One audit log row. `error` is already redacted when stored."""

    route: str
    status: int
    client_id: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    latency_ms: Optional[int] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None


class ExchangeResponse(BaseModel):
    """Response model for /api/auth/exchange."""

    session_id: str
    user_id: str
    expires_at: datetime
    tier: str = "free"


class AuthErrorResponse(BaseModel):
    """401 body for the authentication boundary."""

    error: str = Field(..., description="missing_id_token, sub_missing, jwt_invalid or db_error")
    reason: Optional[str] = None
    refresh: Optional[str] = Field(None, description="URL that re-establishes the identity token")


class SessionStatus(BaseModel):
    """Response model for /api/user/status."""

    authenticated: bool
    user_id: Optional[str] = None
    tier: Optional[str] = None
    memory_opt_in: bool = False


class MemoryPreference(BaseModel):
    """Response model for /api/preferences/memory."""

    authenticated: bool
    memory_opt_in: bool = False


class MemoryPreferenceUpdate(BaseModel):
    """Request model for POST /api/preferences/memory."""

    memory_opt_in: bool = Field(
        default=False,
        validation_alias=AliasChoices("memory_opt_in", "memoryOptIn", "optIn", "on", "value"),
    )


class AnonymousSessionResponse(BaseModel):
    """Response model for POST /api/session."""

    session_id: str
    warn: Optional[str] = None


class AppUser(BaseModel):
    """Claims carried by the legacy HS256 app-session cookie."""

    sub: str
    email: Optional[str] = None
    name: Optional[str] = None
    tier: Optional[str] = None
    roles: List[str] = Field(default_factory=list)


class ChatMessage(BaseModel):
    role: str = Field(..., pattern="^(user|assistant|system)$")
    content: str


class ChatRequest(BaseModel):
    """Request model for /api/chat."""

    session_id: Optional[str] = Field(None, description="Client-held session id")
    messages: List[ChatMessage] = Field(default_factory=list)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "session_id": None,
                "messages": [{"role": "user", "content": "What should I feed a leopard gecko?"}],
            }
        }
    )


class ChatResponse(BaseModel):
    """Response model for /api/chat."""

    session_id: str
    reply: str
    model: str
    tokens_used: Dict[str, Any] = Field(default_factory=dict)
