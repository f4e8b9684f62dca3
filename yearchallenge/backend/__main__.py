"""Run the API with uvicorn: ``python -m yearchallenge.backend``."""

from __future__ import annotations

import uvicorn

from .api import create_app
from .config import load_settings
from .logs import setup_logging


def main() -> None:
    settings = load_settings()
    setup_logging(settings)
    uvicorn.run(create_app(), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
