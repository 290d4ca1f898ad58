from datetime import UTC, datetime, timedelta
from uuid import UUID

import jwt
from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import get_db
from app.core.errors import AuthenticationError
from app.models.shared import DEFAULT_ORGANIZATION_ID
from app.repositories.api_key_repository import ApiKeyRepository, hash_api_key

ADMIN_ROLE = "software_owner"
ADMIN_COOKIE = "owner_session"
ADMIN_HEADER = "X-Admin-Token"


def get_current_organization(
    request: Request,
    db: Session = Depends(get_db),
) -> UUID:
    """Extract organization_id from the API key in the Authorization header.

    If no Authorization header is provided, falls back to the default organization.
    """
    org_id_header = request.headers.get("X-Organization-Id")
    if org_id_header:
        try:
            return UUID(org_id_header)
        except ValueError:
            raise HTTPException(
                status_code=400, detail="Invalid X-Organization-Id header"
            ) from None

    auth_header = request.headers.get("Authorization")
    if not auth_header:
        return DEFAULT_ORGANIZATION_ID

    if not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header format")

    raw_key = auth_header[7:]
    if not raw_key:
        raise HTTPException(status_code=401, detail="API key is required")

    repo = ApiKeyRepository(db)
    api_key = repo.get_by_hash(hash_api_key(raw_key))

    if not api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")

    if api_key.status == "revoked":
        raise HTTPException(status_code=401, detail="API key has been revoked")

    if api_key.expires_at and api_key.expires_at.replace(tzinfo=None) < datetime.now(UTC).replace(
        tzinfo=None
    ):
        raise HTTPException(status_code=401, detail="API key has expired")

    repo.update_last_used(api_key, datetime.now(UTC))

    return api_key.organization_id  # type: ignore[return-value]


def generate_admin_token(subject: str, hours: int = 12) -> str:
    """Issue an admin JWT, used by operator tooling and tests."""
    payload = {
        "sub": subject,
        "role": ADMIN_ROLE,
        "exp": datetime.now(UTC) + timedelta(hours=hours),
    }
    return jwt.encode(payload, settings.ADMIN_JWT_SECRET, algorithm="HS256")


def verify_admin_token(token: str) -> str:
    """Decode an admin JWT and return its subject.

    Raises AuthenticationError for expired, malformed or non-admin tokens.
    """
    try:
        payload = jwt.decode(token, settings.ADMIN_JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Admin token has expired") from None
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid admin token") from None
    if payload.get("role") != ADMIN_ROLE:
        raise AuthenticationError("Admin access required")
    return str(payload.get("sub", ""))


def is_admin_request(request: Request) -> bool:
    token = request.headers.get(ADMIN_HEADER) or request.cookies.get(ADMIN_COOKIE)
    if not token:
        return False
    try:
        verify_admin_token(token)
    except AuthenticationError:
        return False
    return True


def require_admin(request: Request) -> str:
    """FastAPI dependency guarding administrator-only endpoints."""
    token = request.headers.get(ADMIN_HEADER) or request.cookies.get(ADMIN_COOKIE)
    if not token:
        raise AuthenticationError("Admin access required")
    return verify_admin_token(token)
