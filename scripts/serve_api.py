from __future__ import annotations

import uvicorn

from certintake.apps.api.main import create_app
from certintake.core.config import get_settings


def main() -> None:
    # Local entry point; production runs the same app under a process manager.
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
