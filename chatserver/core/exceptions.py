"""
Domain exceptions for the chat server.

Services raise these; the API layer turns them into HTTP responses through
`domain_exception_handler`, and the realtime layer maps them onto
`message_error` frames.
"""

from typing import Any, Dict, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "code": self.code, "details": self.details}


class AuthenticationFailure(DomainException):
    """Missing, malformed, expired or otherwise invalid bearer credential."""

    status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenException(DomainException):
    """Authenticated, but not allowed to touch the target chat or message."""

    status_code = status.HTTP_403_FORBIDDEN


class NotFoundException(DomainException):

    status_code = status.HTTP_404_NOT_FOUND


class ValidationException(DomainException):
    """Raised when business validation fails (empty content, bad group shape...)."""

    status_code = status.HTTP_400_BAD_REQUEST


class TransientStoreFailure(DomainException):
    """The durable store could not be reached. Nothing was written."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthenticationFailure) else None
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()}, headers=headers)


async def store_failure_handler(request: Request, exc: Exception) -> JSONResponse:
    failure = TransientStoreFailure("Message store is temporarily unavailable", code="STORE_UNAVAILABLE")
    return await domain_exception_handler(request, failure)
