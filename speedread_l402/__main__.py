"""Run the SpeedRead L402 service with uvicorn."""

from __future__ import annotations

import logging
import os

import uvicorn

from .config import get_settings


def main() -> None:
    """Start the server."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "speedread_l402.app:create_app",
        factory=True,
        host=os.getenv("HOST", "0.0.0.0"),  # noqa: S104
        port=int(os.getenv("PORT", "3000")),
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
