from __future__ import annotations

import argparse
import asyncio
import sys

from certintake.domain.lifecycle import CLIENT_ACTIVE
from certintake.domain.models import ApiClient
from certintake.persistence.db import SessionLocal
from certintake.services.auth.api_clients import generate_api_key


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Provision an API client for external intake")
    parser.add_argument("--tenant", required=True, help="Tenant id the client submits for")
    parser.add_argument("--name", required=True, help="Human readable client name")
    return parser


async def _create_client(args: argparse.Namespace) -> int:
    client_id, raw_key, key_prefix, key_hash = generate_api_key()
    async with SessionLocal() as session:
        session.add(
            ApiClient(
                id=client_id,
                tenant_id=args.tenant,
                name=args.name,
                key_prefix=key_prefix,
                key_hash=key_hash,
                status=CLIENT_ACTIVE,
                request_count=0,
            )
        )
        await session.commit()
    # The raw key is shown once; only its hash is stored.
    print(f"client_id={client_id}")
    print(f"tenant_id={args.tenant}")
    print(f"key_prefix={key_prefix}")
    print(f"api_key={raw_key}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_client(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_api_client failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
