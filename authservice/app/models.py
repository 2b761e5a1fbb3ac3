"""
Data Models Module

Pydantic models for the records the AuthService persists and exchanges:

- Authentication models (OAuth2 token set, token endpoint response)
- Stored records (pending login state, user session)

Stored records are serialized to JSON on every write and parsed on every read,
so a record is always replaced wholesale and never shared between requests.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from pydantic import BaseModel, Field, JsonValue


# ============================================================================
# Authentication Models
# ============================================================================

class OAuth2Token(BaseModel):
    """Access/refresh token pair returned by the provider's token endpoint."""
    access_token: str = Field(..., description="OAuth2 access token")
    token_type: str = Field(default="Bearer", description="Token type")
    refresh_token: Optional[str] = Field(None, description="Refresh token, if issued")
    expiry: Optional[datetime] = Field(None, description="Access token expiry (UTC)")

    @classmethod
    def from_token_response(cls, data: Dict[str, JsonValue]) -> "OAuth2Token":
        """Build a token set from a raw token endpoint JSON body."""
        expiry = None
        expires_in = data.get("expires_in")
        if isinstance(expires_in, (int, float)) or (isinstance(expires_in, str) and expires_in.isdigit()):
            try:
                expiry = datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
            except (OverflowError, ValueError):
                # Out of datetime range: treat as non-expiring
                expiry = None
        return cls(
            access_token=data["access_token"],
            token_type=data.get("token_type") or "Bearer",
            refresh_token=data.get("refresh_token") or None,
            expiry=expiry,
        )


class TokenResponse(BaseModel):
    """Result of an authorization code exchange."""
    token: OAuth2Token
    id_token: Optional[str] = Field(None, description="Raw ID token, if the provider sent one")


# ============================================================================
# Stored Records
# ============================================================================

class PendingLoginState(BaseModel):
    """CSRF-protecting correlation record for one in-flight login."""
    id: str = Field(..., description="Random id sent to the provider as 'state'", min_length=1)
    original_url: str = Field(..., description="Path and query the user was trying to reach")
    expiry: datetime = Field(..., description="Time after which the state is no longer accepted")

    @property
    def expired(self) -> bool:
        return datetime.now(timezone.utc) >= self.expiry


class Session(BaseModel):
    """Authenticated browser session."""
    user_id: str = Field(..., description="Resolved user identifier", min_length=1)
    claims: Dict[str, JsonValue] = Field(default_factory=dict, description="Decoded ID token claims")
    id_token: str = Field(..., description="Raw ID token")
    oauth2_token: OAuth2Token = Field(..., description="Tokens needed for revocation")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
