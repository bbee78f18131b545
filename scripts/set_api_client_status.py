from __future__ import annotations

import argparse
import asyncio
import sys

from certintake.domain.lifecycle import CLIENT_ACTIVE, CLIENT_DISABLED
from certintake.persistence.db import SessionLocal
from certintake.persistence.repos import api_clients as api_clients_repo


def _build_parser() -> argparse.ArgumentParser:
    # Disabling keeps the row for history; authentication rejects it with 403.
    parser = argparse.ArgumentParser(description="Enable or disable an API client")
    parser.add_argument("client_id", help="API client id")
    parser.add_argument("status", choices=[CLIENT_ACTIVE, CLIENT_DISABLED])
    return parser


async def _set_status(client_id: str, status: str) -> int:
    async with SessionLocal() as session:
        updated = await api_clients_repo.set_status(session, client_id, status)
        if not updated:
            raise ValueError("API client not found")
        await session.commit()
    print(f"API client {client_id} status={status}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_set_status(args.client_id, args.status))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"set_api_client_status failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
