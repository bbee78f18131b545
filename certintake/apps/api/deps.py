from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from certintake.apps.api.rate_limit import enforce_rate_limit
from certintake.core.config import get_settings
from certintake.core.errors import Unauthenticated
from certintake.persistence.db import get_session
from certintake.services.auth.api_clients import AuthenticatedClient, authenticate_client


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise Unauthenticated("Missing or invalid bearer token", headers={"WWW-Authenticate": "Bearer"})
    return parts[1]


def extract_api_key(request: Request) -> str | None:
    # The configured key header wins; Authorization: Bearer is accepted as a fallback.
    settings = get_settings()
    raw_key = request.headers.get(settings.auth_api_key_header)
    if raw_key:
        return raw_key.strip()
    return _parse_bearer_token(request.headers.get("Authorization"))


def idempotency_key_header(
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=128),
) -> str | None:
    # Expose Idempotency-Key in OpenAPI; the body field is the primary carrier.
    return idempotency_key


async def get_current_client(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> AuthenticatedClient:
    # Authenticate, count usage, then apply the per-client rate limit.
    client = await authenticate_client(db, extract_api_key(request))
    request.state.client = client
    await enforce_rate_limit(request, client)
    return client
