from __future__ import annotations

import uvicorn

from publisher.config import settings


def main() -> int:
    uvicorn.run(
        "publisher.app:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level="info",
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
