"""
OIDC protocol adapter.

Wraps the calls the AuthService makes to the identity provider:
- Discovery of the provider metadata (.well-known/openid-configuration)
- Authorization URL construction
- Authorization code exchange
- ID token verification against the provider's JWKS
- Token revocation (RFC 7009), when the provider advertises an endpoint
"""

import logging
import ssl
import time
from typing import Any, Dict, Optional
from urllib.parse import quote, urlencode

import httpx
from jose import JOSEError, jwk, jwt
from pydantic import ValidationError

from ..models import OAuth2Token, TokenResponse

logger = logging.getLogger(__name__)

DISCOVERY_PATH = "/.well-known/openid-configuration"


# =============================================================================
# Exceptions
# =============================================================================

class OIDCError(Exception):
    """Base exception for provider interaction errors"""
    pass


class DiscoveryError(OIDCError):
    pass


class ExchangeError(OIDCError):
    pass


class TokenVerificationError(OIDCError):
    pass


class RevocationError(OIDCError):
    """
    Revocation request rejected by the provider.

    Attributes:
        status_code: HTTP status returned by the revocation endpoint, or None
                     if the request never got a response
        body: Response body, for logging
    """

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


# =============================================================================
# Client
# =============================================================================

class OIDCClient:
    """
    Confidential OIDC client bound to one discovered provider.

    Create instances with OIDCClient.discover(); the constructor takes an
    already fetched metadata document.
    """

    def __init__(
        self,
        metadata: Dict[str, Any],
        client_id: str,
        client_secret: str,
        redirect_url: str,
        scopes: list,
        auth_url: str = "",
        ssl_context: Optional[ssl.SSLContext] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        jwks_cache_seconds: int = 3600,
    ):
        self.metadata = metadata
        self.issuer: str = metadata["issuer"]
        self.authorization_endpoint: str = auth_url or metadata["authorization_endpoint"]
        self.token_endpoint: str = metadata["token_endpoint"]
        self.jwks_uri: str = metadata["jwks_uri"]
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_url = redirect_url
        self.scopes = scopes
        self._ssl_context = ssl_context
        self._transport = transport
        self._jwks_cache_seconds = jwks_cache_seconds
        self._jwks: Optional[Dict[str, Any]] = None
        self._jwks_fetched_at = 0.0

    @classmethod
    async def discover(
        cls,
        provider_url: str,
        client_id: str,
        client_secret: str,
        redirect_url: str,
        scopes: list,
        auth_url: str = "",
        ssl_context: Optional[ssl.SSLContext] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "OIDCClient":
        """
        Fetch the provider metadata and build a client.

        Raises:
            DiscoveryError: If the document cannot be fetched, is incomplete,
                            or names a different issuer than provider_url
        """
        discovery_url = provider_url.rstrip("/") + DISCOVERY_PATH
        try:
            async with _http_client(ssl_context, transport) as client:
                response = await client.get(discovery_url)
        except httpx.HTTPError as e:
            raise DiscoveryError(f"Failed to fetch {discovery_url}: {e}") from e

        if response.status_code != 200:
            raise DiscoveryError(f"Discovery returned {response.status_code}: {response.text}")

        try:
            metadata = response.json()
        except ValueError as e:
            raise DiscoveryError(f"Discovery document is not valid JSON: {e}") from e

        if not isinstance(metadata, dict):
            raise DiscoveryError("Discovery document is not a JSON object")

        for field in ("issuer", "authorization_endpoint", "token_endpoint", "jwks_uri"):
            value = metadata.get(field)
            if not isinstance(value, str) or not value:
                raise DiscoveryError(f"Discovery document missing or invalid '{field}'")

        if metadata["issuer"].rstrip("/") != provider_url.rstrip("/"):
            raise DiscoveryError(
                f"Issuer did not match: expected {provider_url}, got {metadata['issuer']}"
            )

        logger.info(
            f"OIDC discovery loaded: issuer={metadata['issuer']}",
            extra={"revocation_endpoint": metadata.get("revocation_endpoint")},
        )
        return cls(
            metadata,
            client_id=client_id,
            client_secret=client_secret,
            redirect_url=redirect_url,
            scopes=scopes,
            auth_url=auth_url,
            ssl_context=ssl_context,
            transport=transport,
        )

    @property
    def revocation_endpoint(self) -> Optional[str]:
        """Revocation endpoint from provider metadata, None if not advertised."""
        return self.metadata.get("revocation_endpoint") or None

    # -------------------------------------------------------------------------
    # Authorization request
    # -------------------------------------------------------------------------

    def authorization_url(self, state: str) -> str:
        """
        Build the authorization request URL.

        Always asks the provider to show the account chooser.
        """
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_url,
            "scope": " ".join(self.scopes),
            "state": state,
            "prompt": "select_account",
        }
        sep = "&" if "?" in self.authorization_endpoint else "?"
        return f"{self.authorization_endpoint}{sep}{urlencode(params)}"

    # -------------------------------------------------------------------------
    # Code exchange
    # -------------------------------------------------------------------------

    async def exchange(self, code: str) -> TokenResponse:
        """
        Exchange an authorization code for tokens.

        Raises:
            ExchangeError: On transport failure, non-2xx status or a malformed body
        """
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_url,
        }
        auth = None
        if self._use_basic_auth():
            auth = self._basic_auth()
        else:
            payload["client_id"] = self.client_id
            payload["client_secret"] = self.client_secret

        try:
            async with _http_client(self._ssl_context, self._transport) as client:
                response = await client.post(
                    self.token_endpoint,
                    data=payload,
                    auth=auth,
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            raise ExchangeError(f"Token request failed: {e}") from e

        if not response.is_success:
            raise ExchangeError(f"Token endpoint returned {response.status_code}: {response.text}")

        try:
            data = response.json()
            token = OAuth2Token.from_token_response(data)
        except (ValueError, KeyError, TypeError, AttributeError, ValidationError) as e:
            raise ExchangeError(f"Malformed token response: {e}") from e

        id_token = data.get("id_token")
        return TokenResponse(token=token, id_token=id_token if isinstance(id_token, str) and id_token else None)

    def _use_basic_auth(self) -> bool:
        supported = self.metadata.get("token_endpoint_auth_methods_supported")
        if not supported:
            return True
        return "client_secret_basic" in supported or "client_secret_post" not in supported

    def _basic_auth(self) -> httpx.BasicAuth:
        # RFC 6749 section 2.3.1: credentials are form-urlencoded before Basic encoding
        return httpx.BasicAuth(quote(self.client_id, safe=""), quote(self.client_secret, safe=""))

    # -------------------------------------------------------------------------
    # ID token verification
    # -------------------------------------------------------------------------

    async def verify(self, raw_id_token: str) -> Dict[str, Any]:
        """
        Verify an ID token and return its claims.

        Checks signature (provider JWKS), issuer, audience (our client id)
        and expiry.

        Raises:
            TokenVerificationError: If the token is invalid for any reason
        """
        try:
            header = jwt.get_unverified_header(raw_id_token)
        except JOSEError as e:
            raise TokenVerificationError(f"Failed to decode token header: {e}") from e

        signing_key = await self._find_signing_key(header.get("kid"))
        if signing_key is None:
            raise TokenVerificationError("Unable to find matching signing key in JWKS")

        algorithm = signing_key.get("alg") or header.get("alg") or "RS256"
        try:
            public_key = jwk.construct(signing_key, algorithm=algorithm)
            claims = jwt.decode(
                raw_id_token,
                public_key.to_pem().decode("utf-8"),
                algorithms=[algorithm],
                audience=self.client_id,
                issuer=self.issuer,
                options={
                    "verify_at_hash": False,
                    "leeway": 10,
                },
            )
        except JOSEError as e:
            raise TokenVerificationError(f"Token verification failed: {e}") from e

        if not isinstance(claims, dict):
            raise TokenVerificationError("Token claims are not a JSON object")
        return claims

    async def _find_signing_key(self, kid: Optional[str]) -> Optional[Dict[str, Any]]:
        jwks = await self._fetch_jwks()
        key = _select_key(jwks, kid)
        if key is None:
            # Keys may have rotated
            jwks = await self._fetch_jwks(force_refresh=True)
            key = _select_key(jwks, kid)
        return key

    async def _fetch_jwks(self, force_refresh: bool = False) -> Dict[str, Any]:
        now = time.time()
        if not force_refresh and self._jwks and (now - self._jwks_fetched_at) < self._jwks_cache_seconds:
            return self._jwks

        try:
            async with _http_client(self._ssl_context, self._transport) as client:
                response = await client.get(self.jwks_uri)
                response.raise_for_status()
                jwks = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TokenVerificationError(f"Failed to fetch JWKS: {e}") from e

        if not isinstance(jwks, dict) or not isinstance(jwks.get("keys"), list):
            raise TokenVerificationError("Invalid JWKS response: missing 'keys' field")

        self._jwks = jwks
        self._jwks_fetched_at = now
        return jwks

    # -------------------------------------------------------------------------
    # Revocation
    # -------------------------------------------------------------------------

    async def revoke(self, token: OAuth2Token) -> None:
        """
        Revoke the refresh and access tokens of a token set.

        Raises:
            RevocationError: If the provider has no revocation endpoint, the
                             request fails, or any response is non-2xx
        """
        endpoint = self.revocation_endpoint
        if not endpoint:
            raise RevocationError("Provider does not advertise a revocation_endpoint")

        to_revoke = []
        if token.refresh_token:
            to_revoke.append(("refresh_token", token.refresh_token))
        if token.access_token:
            to_revoke.append(("access_token", token.access_token))

        async with _http_client(self._ssl_context, self._transport) as client:
            for hint, value in to_revoke:
                try:
                    response = await client.post(
                        endpoint,
                        data={"token": value, "token_type_hint": hint},
                        auth=self._basic_auth(),
                    )
                except httpx.HTTPError as e:
                    raise RevocationError(f"Revocation request failed: {e}") from e

                if not response.is_success:
                    raise RevocationError(
                        f"Revocation of {hint} returned {response.status_code}",
                        status_code=response.status_code,
                        body=response.text,
                    )


# =============================================================================
# Helpers
# =============================================================================

def _http_client(
    ssl_context: Optional[ssl.SSLContext],
    transport: Optional[httpx.AsyncBaseTransport],
) -> httpx.AsyncClient:
    if transport is not None:
        return httpx.AsyncClient(transport=transport)
    return httpx.AsyncClient(verify=ssl_context if ssl_context is not None else True)


def _select_key(jwks: Dict[str, Any], kid: Optional[str]) -> Optional[Dict[str, Any]]:
    keys = [k for k in jwks.get("keys", []) if isinstance(k, dict) and k.get("use", "sig") == "sig"]
    if kid is None:
        return keys[0] if len(keys) == 1 else None
    for key in keys:
        if key.get("kid") == kid:
            return key
    return None
