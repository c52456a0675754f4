"""Run the Asclepius API with uvicorn: ``python -m asclepius``."""

from __future__ import annotations

import uvicorn

from asclepius.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "asclepius.main:app",
        host=settings.host,
        port=settings.port,
        log_level="info",
        reload=False,
    )


if __name__ == "__main__":
    main()
