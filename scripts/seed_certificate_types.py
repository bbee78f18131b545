from __future__ import annotations

import asyncio
import sys

from certintake.persistence.db import SessionLocal
from certintake.services.certificate_types import DEFAULT_CERTIFICATE_TYPES, seed_certificate_types


async def _seed() -> int:
    async with SessionLocal() as session:
        created = await seed_certificate_types(session)
    print(f"certificate_types_created={created} total={len(DEFAULT_CERTIFICATE_TYPES)}")
    return 0


def main() -> int:
    try:
        return asyncio.run(_seed())
    except Exception as exc:  # noqa: BLE001 - surface seed failures clearly
        print(f"seed_certificate_types failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
