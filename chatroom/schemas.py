"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- The validated post model consumed by the post pipeline
- Response models for API responses
"""

from typing import Optional

from email_validator import EmailNotValidError, validate_email
from pydantic import BaseModel, ConfigDict, Field, StrictStr, field_validator


NAME_MAX_LENGTH = 50
EMAIL_MAX_LENGTH = 255
CONTENT_MAX_LENGTH = 1000


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendRequest(BaseModel):
    """
    Raw body of a send request.

    Only the shape is enforced here: every field is a string and unknown
    fields are rejected. Content rules live in ChatPost so that the token
    and rate limit are checked first.
    """
    model_config = ConfigDict(extra="forbid")

    csrf: StrictStr = Field(default="", description="Anti-forgery token from /api/init")
    name: StrictStr = Field(default="", description="Display name")
    email: StrictStr = Field(default="", description="Email address identifying the author")
    content: StrictStr = Field(default="", description="Message text")


class ChatPost(BaseModel):
    """
    A post that passed validation.

    All fields are trimmed; lengths are counted in characters.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=NAME_MAX_LENGTH)
    email: str = Field(..., min_length=1, max_length=EMAIL_MAX_LENGTH)
    content: str = Field(..., min_length=1, max_length=CONTENT_MAX_LENGTH)

    @field_validator("email")
    @classmethod
    def validate_email_syntax(cls, v: str) -> str:
        """Syntax check only; the address is kept as typed."""
        try:
            validate_email(v, check_deliverability=False)
        except EmailNotValidError:
            raise ValueError("must be a valid email address")
        return v


# =============================================================================
# Pydantic Response Models
# =============================================================================

class InitResponse(BaseModel):
    """Readiness acknowledgment; hands the client its anti-forgery token."""
    ok: bool = True
    csrf: str = Field(..., description="Anti-forgery token to send with every post")


class SendResponse(BaseModel):
    """Response model for an accepted post."""
    ok: bool = True
    id: int = Field(..., description="Id of the new message")


class MessageResponse(BaseModel):
    """A single message in a fetch result."""
    model_config = ConfigDict(from_attributes=True)

    id: int = Field(..., description="Message id, usable as the next since_id")
    name: str = Field(..., description="Author's current display name")
    content: str = Field(..., description="Message text")
    created_at: str = Field(..., description="Server time the message was stored")


class FetchResponse(BaseModel):
    """Messages after the watermark, ascending by id."""
    ok: bool = True
    messages: list[MessageResponse] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    ok: bool = False
    error: str = Field(..., description="Error description")
    field: Optional[str] = Field(None, description="Offending field for invalid input")
    reason: Optional[str] = Field(None, description="Violated constraint for invalid input")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
