from __future__ import annotations

import uvicorn

from orderflow.api.app import create_app
from orderflow.common.config import Settings
from orderflow.common.logging import init_structured_logging


def main() -> None:
    settings = Settings.from_env()
    init_structured_logging(service=settings.service_name, env=settings.env, level=settings.log_level)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level="warning",
        access_log=False,
    )


if __name__ == "__main__":
    main()
