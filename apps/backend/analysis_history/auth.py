from __future__ import annotations

import uuid
from datetime import UTC, datetime

from fastapi import HTTPException, Request, status
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from .config import settings
from .logging import logger

_TOKEN_SALT = "analysis-history.access"


def _build_serializer() -> URLSafeTimedSerializer:
    """Construct a serializer for signing and verifying bearer tokens."""

    secret = settings.access_token_secret.strip()
    if not secret:
        raise RuntimeError("ACCESS_TOKEN_SECRET is not configured")
    return URLSafeTimedSerializer(secret, salt=_TOKEN_SALT)


def _token_max_age() -> int:
    return max(60, int(settings.access_token_max_age_seconds or 0) or 60 * 60 * 24 * 14)


def issue_access_token(owner_id: str) -> str:
    """Generate a signed bearer token naming the history owner."""

    serializer = _build_serializer()
    payload = {
        "tid": uuid.uuid4().hex,
        "sub": owner_id,
        "issued_at": datetime.now(UTC).replace(microsecond=0).isoformat(),
    }
    return serializer.dumps(payload)


def verify_access_token(token: str) -> dict:
    """Decode a signed bearer token and return the embedded payload."""

    serializer = _build_serializer()
    return serializer.loads(token, max_age=_token_max_age())


def _auth_log_context(request: Request, *, reason: str) -> dict[str, object]:
    """Compose structured log context aligned with the access log fields."""

    return {
        "reason": reason,
        "path": request.url.path,
        "client_ip": request.client.host if request.client else "unknown",
        "user_agent": request.headers.get("user-agent"),
        "request_id": getattr(request.state, "request_id", None),
    }


def read_bearer_token(request: Request) -> str | None:
    raw = request.headers.get("authorization") or ""
    scheme, _, credentials = raw.partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_owner(request: Request) -> str:
    """Validate the bearer token and return the owner id it was issued for."""

    raw_token = read_bearer_token(request)
    if not raw_token:
        logger.warning(
            "access_token_validation_failed",
            **_auth_log_context(request, reason="missing_token"),
        )
        raise _unauthorized("Authentication required")

    try:
        payload = verify_access_token(raw_token)
    except SignatureExpired as exc:
        logger.warning(
            "access_token_validation_failed",
            **_auth_log_context(request, reason="expired"),
        )
        raise _unauthorized("Access token expired") from exc
    except BadSignature as exc:
        logger.warning(
            "access_token_validation_failed",
            **_auth_log_context(request, reason="bad_signature"),
        )
        raise _unauthorized("Invalid access token") from exc
    except RuntimeError as exc:
        logger.error(
            "access_token_validation_failed",
            **_auth_log_context(request, reason="configuration_error"),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Authentication configuration error",
        ) from exc

    owner_id = payload.get("sub") if isinstance(payload, dict) else None
    if not owner_id:
        logger.warning(
            "access_token_validation_failed",
            **_auth_log_context(request, reason="missing_sub"),
        )
        raise _unauthorized("Invalid access token payload")

    request.state.owner_id = owner_id
    return str(owner_id)
