"""Verification of bearer tokens issued by the account service."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from jose import JWTError, jwt

from auth.config import Settings, settings as default_settings


class InvalidTokenError(Exception):
    """Signature, expiry, issuer or audience check failed, or the subject is missing."""


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    expires_at: datetime | None = None


def verify_token(token: str, config: Settings | None = None) -> TokenClaims:
    config = config or default_settings
    try:
        payload = jwt.decode(
            token,
            config.token_secret,
            algorithms=[config.token_algorithm],
            issuer=config.token_issuer,
            audience=config.token_audience,
            options={"verify_aud": config.token_audience is not None},
        )
    except JWTError as exc:
        raise InvalidTokenError(str(exc)) from exc

    subject = payload.get("sub")
    if not subject:
        raise InvalidTokenError("Token has no subject")

    exp = payload.get("exp")
    expires_at = datetime.fromtimestamp(exp, tz=timezone.utc) if isinstance(exp, (int, float)) else None
    return TokenClaims(user_id=str(subject), expires_at=expires_at)
