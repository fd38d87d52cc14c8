"""Module executed when running ``python -m imdbstream``."""

from __future__ import annotations

import uvicorn

from app.config import settings


def main() -> None:
    """Serve the addon with uvicorn on the configured host and port."""

    logging_level = "debug" if settings.environment == "development" else "info"
    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
        log_level=logging_level,
    )


if __name__ == "__main__":  # pragma: no cover - runtime entrypoint
    main()
