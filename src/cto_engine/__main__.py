"""Entry point for running the application with uvicorn."""

import logging

import uvicorn

from cto_engine.api.app import create_app
from cto_engine.config import get_settings


def main() -> None:
    """Run the application."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        create_app(settings),
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
