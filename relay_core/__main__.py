"""启动中继服务：``python -m relay_core``。"""

import uvicorn

from relay_core.api.app import create_app
from relay_core.config.settings import settings
from relay_core.infrastructure.logging.logger import logger


def main() -> None:
    logger.info("=" * 60)
    logger.info("Backend Configuration:")
    logger.info(f"  BACKEND_HTTP: {settings.session_url}")
    logger.info(f"  BACKEND_WS: {settings.stream_url}")
    logger.info(f"  DISCORD_CHANNEL_ID: {'SET' if settings.discord_channel_id else 'NOT SET'}")
    logger.info("=" * 60)
    uvicorn.run(create_app(), host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
