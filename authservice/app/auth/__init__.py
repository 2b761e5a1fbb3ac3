"""
Authentication Package

This package implements the authentication decision engine of the AuthService
on top of an OpenID Connect provider.

Modules:
- routes: Request handlers (authenticate, /login/oidc callback, /logout)
- oidc: Provider adapter (discovery, code exchange, ID token verification, revocation)
- session: Server-side sessions behind a signed, HttpOnly, Secure cookie
- state: Single-use pending login states (OAuth2 'state' parameter)
- utils: Bearer token extraction, user id resolution, TLS context

The login flow:
1. An unauthenticated browser request is redirected to the provider
2. The user authenticates with the provider
3. The provider redirects back to /login/oidc with a code and the state
4. The AuthService verifies the ID token and creates a session
5. Subsequent requests carry the session cookie and get identity headers
"""

from .routes import auth_router

__all__ = [
    "auth_router",
]
