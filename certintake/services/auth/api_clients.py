from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac
import secrets
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from certintake.core.errors import Forbidden, Unauthenticated
from certintake.domain.lifecycle import CLIENT_ACTIVE
from certintake.persistence.repos import api_clients as api_clients_repo


API_KEY_PREFIX_LENGTH = 12
_KEY_MARKER = "cik_"


@dataclass(frozen=True)
class AuthenticatedClient:
    # Identity attached to a request after a successful key check.
    client_id: str
    tenant_id: str
    name: str


def hash_api_key(raw_key: str) -> str:
    # Only the SHA-256 digest of a key is ever stored.
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key(*, client_id: str | None = None) -> tuple[str, str, str, str]:
    # Prefix is marker + 8 random hex chars so it is unique and exactly 12 characters.
    resolved_id = client_id or uuid4().hex
    raw_key = f"{_KEY_MARKER}{secrets.token_hex(4)}{secrets.token_urlsafe(32)}"
    key_prefix = raw_key[:API_KEY_PREFIX_LENGTH]
    return resolved_id, raw_key, key_prefix, hash_api_key(raw_key)


async def authenticate_client(session: AsyncSession, raw_key: str | None) -> AuthenticatedClient:
    # Prefix lookup narrows to one row; the hash compare is constant-time.
    if not raw_key:
        raise Unauthenticated("API key required")
    if len(raw_key) < API_KEY_PREFIX_LENGTH:
        raise Unauthenticated("Invalid API key format")
    client = await api_clients_repo.get_by_prefix(session, raw_key[:API_KEY_PREFIX_LENGTH])
    if client is None:
        raise Unauthenticated("Invalid API key")
    if not hmac.compare_digest(client.key_hash, hash_api_key(raw_key)):
        raise Unauthenticated("Invalid API key")
    if client.status != CLIENT_ACTIVE:
        raise Forbidden("API client is not active", details={"status": client.status})
    await api_clients_repo.increment_usage(session, client.id)
    await session.commit()
    return AuthenticatedClient(client_id=client.id, tenant_id=client.tenant_id, name=client.name)
