"""
Shared fixtures for the AuthService tests.

Provides RSA test keys and token helpers, settings, a mocked OIDC client and
a TestClient wired to a ready AppState.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import jwt
import pytest
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from jwt.algorithms import RSAAlgorithm

from authservice.app.auth.session import SessionManager
from authservice.app.auth.state import StateStore
from authservice.app.config import Settings
from authservice.app.dependencies import AppState
from authservice.app.main import create_auth_app
from authservice.app.models import OAuth2Token, TokenResponse
from authservice.app.storage import MemoryStore


TEST_ISSUER = "https://idp.example.com"
TEST_CLIENT_ID = "test-client-id"
TEST_KID = "test-key-id-2024"


# =============================================================================
# Keys & tokens
# =============================================================================

def generate_test_keys():
    """Generate RSA key pair for testing"""
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
        backend=default_backend()
    )
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )
    return private_pem.decode(), private_key.public_key()


TEST_PRIVATE_KEY, TEST_PUBLIC_KEY = generate_test_keys()


def create_id_token(claims=None, kid: str = TEST_KID, exp_delta_minutes: int = 60, **overrides) -> str:
    """
    Create an ID token signed with the test private key.

    Args:
        claims: Extra claims merged into the standard ones
        kid: Key ID for JWKS matching
        exp_delta_minutes: Token expiry in minutes (negative for expired tokens)
        overrides: Replace standard claims (iss, aud, ...)
    """
    now = datetime.now(timezone.utc)
    payload = {
        "iss": TEST_ISSUER,
        "sub": "test-user-sub-123",
        "aud": TEST_CLIENT_ID,
        "exp": now + timedelta(minutes=exp_delta_minutes),
        "iat": now,
        "email": "alice@example.com",
    }
    payload.update(claims or {})
    payload.update(overrides)
    return jwt.encode(payload, TEST_PRIVATE_KEY, algorithm="RS256", headers={"kid": kid})


def create_jwks(kid: str = TEST_KID) -> dict:
    """JWKS document exposing the test public key."""
    key = RSAAlgorithm.to_jwk(TEST_PUBLIC_KEY, as_dict=True)
    key["kid"] = kid
    key["use"] = "sig"
    key["alg"] = "RS256"
    return {"keys": [key]}


# =============================================================================
# Settings & application
# =============================================================================

def make_settings(**overrides) -> Settings:
    values = {
        "OIDC_PROVIDER": TEST_ISSUER,
        "OIDC_SCOPES": "profile email",
        "CLIENT_ID": TEST_CLIENT_ID,
        "CLIENT_SECRET": "test-client-secret",
        "REDIRECT_URL": "https://gateway.example.com/login/oidc",
        "SKIP_AUTH_URI": "/public /dex/",
        "SESSION_SECRET": "test-session-secret-0123456789",
    }
    values.update(overrides)
    return Settings(**values)


def make_fake_oidc() -> Mock:
    """OIDC client double: async provider calls, deterministic authorization URL."""
    oidc = Mock()
    oidc.authorization_url.side_effect = lambda state: f"{TEST_ISSUER}/auth?state={state}"
    oidc.revocation_endpoint = f"{TEST_ISSUER}/revoke"
    oidc.exchange = AsyncMock(return_value=TokenResponse(
        token=OAuth2Token(access_token="test-access-token", refresh_token="test-refresh-token"),
        id_token="raw-id-token",
    ))
    oidc.verify = AsyncMock(return_value={
        "iss": TEST_ISSUER,
        "sub": "test-user-sub-123",
        "email": "alice@example.com",
        "groups": ["admins", "users"],
    })
    oidc.revoke = AsyncMock(return_value=None)
    return oidc


def make_ready_state(settings: Settings, oidc: Mock) -> AppState:
    """AppState as left behind by a completed setup."""
    app_state = AppState(settings)
    app_state.oidc = oidc
    app_state.store = MemoryStore()
    app_state.sessions = SessionManager(app_state.store, settings.SESSION_SECRET, settings.SESSION_MAX_AGE)
    app_state.states = StateStore(app_state.store, settings.STATE_MAX_AGE)
    app_state.readiness.set()
    return app_state


def make_client(app_state: AppState, **kwargs) -> TestClient:
    # https so that the Secure session cookie is sent back
    return TestClient(
        create_auth_app(app_state),
        base_url="https://testserver",
        follow_redirects=False,
        **kwargs
    )


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def fake_oidc():
    return make_fake_oidc()


@pytest.fixture
def app_state(settings, fake_oidc):
    return make_ready_state(settings, fake_oidc)


@pytest.fixture
def client(app_state):
    return make_client(app_state)
