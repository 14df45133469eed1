"""Entry point for running the service via `python -m boxinspector`."""

from __future__ import annotations

import uvicorn

from boxinspector.config import get_settings

if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "boxinspector.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )
