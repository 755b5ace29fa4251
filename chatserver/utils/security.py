from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from pydantic import ValidationError

from chatserver.core.config import Settings
from chatserver.core.exceptions import AuthenticationFailure
from chatserver.schemas.user import TokenPayload


def create_access_token(subject: str, settings: Settings, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode: Dict[str, Any] = {"sub": subject, "exp": expire}
    return jwt.encode(to_encode, settings.jwt_secret_key.get_secret_value(), algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, settings: Settings) -> TokenPayload:
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key.get_secret_value(),
            algorithms=[settings.jwt_algorithm],
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationFailure("Token has expired", code="TOKEN_EXPIRED") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthenticationFailure("Invalid access token", code="TOKEN_INVALID") from exc
    try:
        return TokenPayload.model_validate(payload)
    except ValidationError as exc:
        raise AuthenticationFailure("Invalid token payload", code="TOKEN_INVALID") from exc


class TokenVerifier:
    """Turns a bearer credential into a stable user id; shared by HTTP and WebSocket auth."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def verify(self, token: Optional[str]) -> str:
        if not token:
            raise AuthenticationFailure("Missing access token", code="TOKEN_MISSING")
        payload = decode_access_token(token, self._settings)
        if not payload.sub:
            raise AuthenticationFailure("Token has no subject", code="TOKEN_INVALID")
        return payload.sub


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credential = authorization.partition(" ")
    if scheme.lower() != "bearer" or not credential.strip():
        return None
    return credential.strip()
