"""Capability tokens shared by the operator-facing and node-facing deployments."""

from __future__ import annotations

import hashlib
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import jwt

from .errors import AuthError, AuthErrorKind

TOKEN_TTL_SECONDS = 14 * 24 * 3600

OPERATOR_AUDIENCE = "sshmgmt-operator"
NODE_AUDIENCE = "sshmgmt-node"

_ALGORITHM = "HS256"


class Role(str, Enum):
    PRIVILEGED = "privileged"
    NORMAL = "normal"

    @classmethod
    def parse(cls, value: object) -> "Role":
        """Total parse: anything other than a case-insensitive ``privileged`` is ``normal``."""
        if isinstance(value, str) and value.strip().lower() == cls.PRIVILEGED.value:
            return cls.PRIVILEGED
        return cls.NORMAL

    def allows(self, required: "Role") -> bool:
        return required is Role.NORMAL or self is Role.PRIVILEGED


def key_id_from_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()[:16]


def mint_capability_token(
    *,
    secret: str,
    role: Role,
    audience: str,
    ttl_seconds: int = TOKEN_TTL_SECONDS,
    now: Optional[int] = None,
) -> str:
    issued_at = int(time.time()) if now is None else now
    payload = {
        "role": role.value,
        "iat": issued_at,
        "exp": issued_at + ttl_seconds,
        "aud": audience,
    }
    headers = {"kid": key_id_from_secret(secret)}
    return jwt.encode(payload, secret, algorithm=_ALGORITHM, headers=headers)


def validate_capability_token(secrets: str | Sequence[str], token: str, *, audience: str) -> Role:
    """Return the token's role or raise ``AuthError(Invalid)``.

    Signature, expiry and audience failures are reported alike; only the PyJWT
    message distinguishes them.
    """
    secret_list = [secrets] if isinstance(secrets, str) else [secret for secret in secrets if secret]
    if not secret_list:
        raise AuthError(AuthErrorKind.INVALID, raw_message="no signing secret configured")

    try:
        kid = jwt.get_unverified_header(token).get("kid")
    except jwt.PyJWTError as exc:
        raise AuthError(AuthErrorKind.INVALID, raw_message=str(exc)) from exc

    if kid:
        keyed = [secret for secret in secret_list if key_id_from_secret(secret) == kid]
        secret_list = keyed + [secret for secret in secret_list if secret not in keyed]

    last_error: Optional[jwt.PyJWTError] = None
    for secret in secret_list:
        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[_ALGORITHM],
                audience=audience,
                options={"require": ["exp", "role"]},
            )
        except jwt.PyJWTError as exc:
            last_error = exc
            continue
        return Role.parse(payload.get("role"))

    raise AuthError(AuthErrorKind.INVALID, raw_message=str(last_error)) from last_error


def extract_bearer_token(header: Optional[str]) -> str:
    if not header:
        raise AuthError(AuthErrorKind.MISSING)
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer":
        return credentials.strip()
    return header.strip()


@dataclass
class TokenAuthority:
    """Issues and validates tokens for one deployment (one secret set, one audience)."""

    secret: str
    audience: str
    fallbacks: list[str] = field(default_factory=list)
    ttl_seconds: int = TOKEN_TTL_SECONDS

    @classmethod
    def from_secrets(cls, secrets: list[str], audience: str) -> "TokenAuthority":
        """Build from a current-first secret list such as ``ControlPlaneSettings.jwt_secrets``."""
        current, *fallbacks = secrets
        return cls(secret=current, audience=audience, fallbacks=fallbacks)

    @property
    def secrets(self) -> list[str]:
        return [self.secret, *self.fallbacks]

    def issue(self, role: Role) -> str:
        return mint_capability_token(
            secret=self.secret,
            role=role,
            audience=self.audience,
            ttl_seconds=self.ttl_seconds,
        )

    def validate(self, token: str) -> Role:
        return validate_capability_token(self.secrets, token, audience=self.audience)

    def authorize(self, header: Optional[str], required: Role = Role.NORMAL) -> Role:
        """Resolve the role behind an ``Authorization`` header and check it against ``required``."""
        role = self.validate(extract_bearer_token(header))
        if not role.allows(required):
            raise AuthError(AuthErrorKind.FORBIDDEN, raw_message=f"{required.value} role required")
        return role
