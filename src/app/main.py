from __future__ import annotations

import asyncio
import logging

from .config import AppConfig
from .di import AppContainer
from .web import start_web_server

logger = logging.getLogger(__name__)


async def main() -> None:
    config = AppConfig()
    config.ensure_dirs()
    logging.basicConfig(level=getattr(logging, config.log_level.upper(), logging.INFO))

    container = await AppContainer.build(config)
    runner = await start_web_server(container.create_web_app(), config.http_host, config.http_port)

    try:
        if config.telegram_bot_token:
            bot = container.create_bot()
            dispatcher = container.create_dispatcher()
            try:
                # Drop pending updates to avoid processing old commands after restart
                await dispatcher.start_polling(bot, drop_pending_updates=True)
            finally:
                await bot.session.close()
        else:
            logger.info("TELEGRAM_BOT_TOKEN not set, admin bot disabled")
            while True:
                await asyncio.sleep(3600)
    finally:
        await runner.cleanup()


if __name__ == "__main__":
    asyncio.run(main())
