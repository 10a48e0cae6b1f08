"""Caller identity from Supabase-issued access tokens.

The sharing core trusts the identity it is handed; this module is where
that identity comes from on the HTTP surface.

Key sources:
  - ``SUPABASE_JWT_SECRET`` set: HS256 with the shared project secret.
  - Otherwise, ``SUPABASE_URL`` set: RS256 keys from the project JWKS.

Auth transport: ``Authorization: Bearer <access_token>``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import jwt
from jwt import PyJWKClient, PyJWKClientError
from starlette.requests import Request

# ── Constants ─────────────────────────────────────────────────────────

DEFAULT_AUDIENCE = 'authenticated'
JWKS_CACHE_TTL_SECONDS = 300
BEARER_PREFIX = 'Bearer '

# ── Types ─────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class AuthIdentity:
    """Verified caller.

    Attributes:
        user_id: Profile id (``sub`` claim). Used as ``actor_id`` throughout.
        email: Lower-cased email, empty when the token carries none.
        role: Supabase role claim.
        raw_claims: Decoded payload.
    """

    user_id: str
    email: str = ''
    role: str = 'authenticated'
    raw_claims: dict[str, Any] = field(default_factory=dict)


class TokenVerificationError(Exception):
    def __init__(self, code: str, detail: str = '') -> None:
        self.code = code
        self.detail = detail
        super().__init__(f'{code}: {detail}' if detail else code)


class KeyProvider(Protocol):
    def get_signing_key(self, token: str) -> Any: ...


class JWKSKeyProvider:
    """Signing keys from the project's JWKS endpoint, cached by PyJWKClient."""

    def __init__(self, jwks_url: str, cache_ttl: int = JWKS_CACHE_TTL_SECONDS) -> None:
        self._client = PyJWKClient(jwks_url, cache_jwk_set=True, lifespan=cache_ttl)

    def get_signing_key(self, token: str) -> Any:
        try:
            return self._client.get_signing_key_from_jwt(token).key
        except PyJWKClientError as exc:
            raise TokenVerificationError('jwks_fetch_error', str(exc)) from exc


class StaticKeyProvider:
    def __init__(self, secret: str) -> None:
        self._secret = secret

    def get_signing_key(self, token: str) -> str:
        return self._secret


# ── Verifier ─────────────────────────────────────────────────────────


class TokenVerifier:
    def __init__(
        self,
        key_provider: KeyProvider,
        audience: str = DEFAULT_AUDIENCE,
        algorithms: list[str] | None = None,
    ) -> None:
        self._key_provider = key_provider
        self._audience = audience
        self._algorithms = algorithms or ['HS256']

    def verify(self, token: str) -> AuthIdentity:
        """Verify signature, audience and expiry; return the identity.

        Raises:
            TokenVerificationError: on any failure. ``code`` says which.
        """
        if not token or not token.strip():
            raise TokenVerificationError('empty_token')

        key = self._key_provider.get_signing_key(token)
        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=self._algorithms,
                audience=self._audience,
                options={'require': ['sub', 'exp', 'aud']},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenVerificationError('token_expired') from exc
        except jwt.InvalidAudienceError as exc:
            raise TokenVerificationError('invalid_audience', f'expected {self._audience}') from exc
        except jwt.DecodeError as exc:
            raise TokenVerificationError('decode_error', str(exc)) from exc
        except jwt.InvalidTokenError as exc:
            raise TokenVerificationError('invalid_token', str(exc)) from exc

        user_id = claims.get('sub')
        if not user_id:
            raise TokenVerificationError('missing_sub_claim')
        email = claims.get('email') or ''
        return AuthIdentity(
            user_id=user_id,
            email=email.lower(),
            role=claims.get('role', 'authenticated'),
            raw_claims=claims,
        )


def extract_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get('authorization', '')
    if auth_header.startswith(BEARER_PREFIX):
        return auth_header[len(BEARER_PREFIX):].strip()
    return None


def create_token_verifier(
    jwt_secret: str | None = None,
    supabase_url: str | None = None,
    audience: str = DEFAULT_AUDIENCE,
) -> TokenVerifier:
    """HS256 when a secret is configured, else RS256 via JWKS.

    Raises:
        ValueError: neither a secret nor a project URL is available.
    """
    if jwt_secret:
        return TokenVerifier(StaticKeyProvider(jwt_secret), audience, ['HS256'])
    if supabase_url:
        jwks_url = f'{supabase_url.rstrip("/")}/auth/v1/.well-known/jwks.json'
        return TokenVerifier(JWKSKeyProvider(jwks_url), audience, ['RS256'])
    raise ValueError('Either jwt_secret (HS256) or supabase_url (JWKS) is required')
