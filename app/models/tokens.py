"""
Token Models — Pydantic schemas for the push token registry.

Defines the stored PushToken shape and the request/response models
for the token endpoints:
- POST /api/v1/tokens/register — Register or refresh a device token
- POST /api/v1/tokens/attach — Best-effort registration during sign-up/login
- POST /api/v1/tokens/deactivate — Unregister a token (logout)
- POST /api/v1/tokens/sweep — Deactivate tokens over the failure threshold
- GET /api/v1/tokens/stats — Registry counters
- GET /api/v1/tokens/{recipient_id} — Active tokens for a recipient
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

Platform = Literal["android", "ios", "web", "unknown"]

PLATFORMS = ("android", "ios", "web", "unknown")


class DeviceInfo(BaseModel):
    """Device metadata reported by the app at registration time."""

    model: Optional[str] = Field(default=None, description="Device model, e.g. 'Pixel 8'.")
    os_version: Optional[str] = Field(default=None, description="Operating system version.")
    app_version: Optional[str] = Field(default=None, description="Installed app version.")


class PushToken(BaseModel):
    """
    A provider-issued push token and its health counters.

    One row per token string. The token maps to exactly one owning
    recipient at a time; a recipient may own many active tokens.
    """

    token: str
    recipient_id: str
    platform: Platform = "unknown"
    device_info: DeviceInfo = Field(default_factory=DeviceInfo)
    is_active: bool = True
    last_used: Optional[datetime] = None
    failure_count: int = 0
    last_failure: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict) -> "PushToken":
        """Build from a flat push_tokens row."""
        return cls(
            token=row["token"],
            recipient_id=row["recipient_id"],
            platform=row.get("platform") or "unknown",
            device_info=DeviceInfo(
                model=row.get("device_model"),
                os_version=row.get("os_version"),
                app_version=row.get("app_version"),
            ),
            is_active=row.get("is_active", True),
            last_used=row.get("last_used"),
            failure_count=row.get("failure_count") or 0,
            last_failure=row.get("last_failure"),
            created_at=row.get("created_at"),
        )


class TokenRegisterRequest(BaseModel):
    """
    Payload for POST /api/v1/tokens/register.

    Sent by the mobile or web app after the push provider issues
    (or rotates) a token for this installation.
    """

    recipient_id: str = Field(..., description="ID of the worker who owns the device.")
    token: str = Field(..., max_length=4096, description="Provider-issued push token.")
    platform: str = Field(default="unknown", description="android, ios, web, or unknown.")
    device_info: DeviceInfo = Field(default_factory=DeviceInfo)
    exclusive: bool = Field(
        default=False,
        description=(
            "Deactivate the recipient's other tokens (login-time single-device "
            "semantics). Defaults to additive multi-device registration."
        ),
    )

    @field_validator("recipient_id", "token")
    @classmethod
    def strip_identifiers(cls, v: str) -> str:
        """Strip whitespace; emptiness is checked by the registry."""
        return v.strip()

    @field_validator("platform")
    @classmethod
    def validate_platform(cls, v: str) -> str:
        """Ensure platform is a supported value."""
        v = (v or "unknown").lower()
        if v not in PLATFORMS:
            raise ValueError(f"Platform must be one of: {', '.join(PLATFORMS)}.")
        return v


class TokenRegisterResponse(BaseModel):
    """Response from POST /api/v1/tokens/register."""

    token_id: str = Field(..., description="The stored token (primary key).")
    platform: str
    is_active: bool
    status: str = Field(
        default="registered",
        description="'registered' (new token), 'updated' (refreshed), or 'transferred' (new owner).",
    )


class TokenAttachResponse(BaseModel):
    """Response from POST /api/v1/tokens/attach. Always 200."""

    attached: bool
    error: Optional[str] = None


class TokenDeactivateRequest(BaseModel):
    """Payload for POST /api/v1/tokens/deactivate."""

    recipient_id: str
    token: str


class TokenDeactivateResponse(BaseModel):
    ok: bool = True


class TokenSweepResponse(BaseModel):
    deactivated_count: int


class TokenListItem(BaseModel):
    """A single entry of GET /api/v1/tokens/{recipient_id}."""

    token: str
    platform: str
    is_active: bool
    last_used: Optional[datetime] = None


class TokenStatsResponse(BaseModel):
    """Response for GET /api/v1/tokens/stats."""

    total_tokens: int
    active_tokens: int
    inactive_tokens: int
    platform_stats: dict[str, int] = Field(
        default_factory=dict,
        description="Active token count per platform.",
    )
