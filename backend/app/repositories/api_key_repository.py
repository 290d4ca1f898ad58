import hashlib
import secrets
from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from app.models.api_key import ApiKey


def generate_api_key() -> str:
    """Generate a random API key with 'dun_' prefix."""
    return "dun_" + secrets.token_hex(32)


def hash_api_key(raw_key: str) -> str:
    """SHA-256 hash of the raw API key."""
    return hashlib.sha256(raw_key.encode()).hexdigest()


class ApiKeyRepository:
    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        organization_id: UUID,
        name: str | None = None,
        expires_at: datetime | None = None,
    ) -> tuple[ApiKey, str]:
        """Create a new API key. Returns (api_key_model, raw_key)."""
        raw_key = generate_api_key()
        api_key = ApiKey(
            organization_id=organization_id,
            key_hash=hash_api_key(raw_key),
            key_prefix=raw_key[:12],
            name=name,
            expires_at=expires_at,
        )
        self.db.add(api_key)
        self.db.commit()
        self.db.refresh(api_key)
        return api_key, raw_key

    def get_by_hash(self, key_hash: str) -> ApiKey | None:
        return self.db.query(ApiKey).filter(ApiKey.key_hash == key_hash).first()

    def update_last_used(self, api_key: ApiKey, now: datetime) -> None:
        api_key.last_used_at = now  # type: ignore[assignment]
        self.db.commit()
