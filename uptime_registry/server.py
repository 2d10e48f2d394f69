from __future__ import annotations

import os

import uvicorn

from uptime_registry.app import create_app
from uptime_registry.cli import configure_logging
from uptime_registry.settings import RegistrySettings


def main() -> None:
    host = os.getenv("UPTIME_HOST", "0.0.0.0").strip() or "0.0.0.0"
    port = int(os.getenv("UPTIME_PORT", "8112"))
    configure_logging(os.getenv("UPTIME_LOG_LEVEL", "info"))
    settings = RegistrySettings()
    app = create_app(settings)
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
