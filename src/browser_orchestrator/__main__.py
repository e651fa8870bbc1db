"""Entrypoint for running the orchestrator via `python -m browser_orchestrator`."""
from __future__ import annotations

import uvicorn

from .config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "browser_orchestrator.main:app",
        host=settings.api_host,
        port=settings.api_port,
    )


if __name__ == "__main__":  # pragma: no cover
    main()
