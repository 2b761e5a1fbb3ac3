"""
Authentication utilities shared by the request handlers.

This module handles:
- Extracting bearer tokens from request headers
- Resolving the user id from decoded ID token claims
- Building the TLS context used for outbound provider calls
- Request-scoped loggers
"""

import logging
import ssl
from typing import Any, Dict, Optional

from fastapi import Request


class UserIDError(Exception):
    """Raised when no usable user id can be found in a claim set."""
    pass


# =============================================================================
# Bearer tokens
# =============================================================================

def get_bearer_token(value: Optional[str]) -> str:
    """
    Extract a token from a header value.

    The 'Bearer ' prefix is optional; an absent header yields "".

    Example:
        >>> get_bearer_token("Bearer abc.def.ghi")
        'abc.def.ghi'
        >>> get_bearer_token(" abc.def.ghi ")
        'abc.def.ghi'
    """
    if not value:
        return ""
    value = value.strip()
    if value.startswith("Bearer "):
        return value[len("Bearer "):].strip()
    return value


# =============================================================================
# Claims
# =============================================================================

def resolve_user_id(claims: Dict[str, Any], claim: str) -> str:
    """
    Extract the user id from decoded claims.

    Uses the configured claim, falling back to the standard 'sub' claim when
    the configured one is absent (typically service accounts).

    Args:
        claims: Decoded ID token claims
        claim: Configured user id claim name (e.g., 'email')

    Returns:
        Non-empty user id string

    Raises:
        UserIDError: If neither claim holds a non-empty string
    """
    for name in (claim, "sub"):
        if name not in claims or claims[name] in (None, ""):
            continue
        value = claims[name]
        if not isinstance(value, str):
            raise UserIDError(f"Claim '{name}' is not a string")
        return value
    raise UserIDError(f"Neither '{claim}' nor 'sub' claim present")


# =============================================================================
# TLS
# =============================================================================

def build_ssl_context(ca_bundle: Optional[bytes]) -> ssl.SSLContext:
    """
    Create the TLS context for outbound calls to the provider.

    The custom CA bundle, if any, is trusted in addition to the system roots.
    """
    context = ssl.create_default_context()
    if ca_bundle:
        context.load_verify_locations(cadata=ca_bundle.decode("utf-8"))
    return context


# =============================================================================
# Logging
# =============================================================================

def logger_for_request(request: Request, name: str = "authservice") -> logging.LoggerAdapter:
    """Logger carrying the client address and request path."""
    client_ip = request.client.host if request.client else None
    return logging.LoggerAdapter(
        logging.getLogger(name),
        {"ip": client_ip, "request": request.url.path},
    )
