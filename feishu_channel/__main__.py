"""Run the Feishu channel server: ``python -m feishu_channel``."""

import logging

import uvicorn

from feishu_channel.configuration.config import get_settings
from feishu_channel.infrastructure.adapters.primary.web.main import create_app


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
