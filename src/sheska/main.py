"""
Sheska Discord Bot
==================

Community bot whose scheduler delivers announcements (Discord webhook
messages and X posts) at their programmed time, surviving restarts.
"""

import os
import sys
from pathlib import Path


def resolve_base_dir() -> Path:
    """Determine the base directory of the project.

    Resolution order:
    1. SHESKA_HOME environment variable, if set.
    2. If running in a frozen/compiled context, use the executable's directory.
    3. Otherwise, assume running from source and use the grandparent of this file's directory.
    """
    if env_home := os.getenv("SHESKA_HOME"):
        return Path(env_home).resolve()

    if getattr(sys, "frozen", False) or getattr(sys, "compiled", False):
        return Path(sys.argv[0]).resolve().parent

    return Path(__file__).resolve().parents[2]


BASE_DIR = resolve_base_dir()

import asyncio
from typing import Any

import discord
from dotenv import load_dotenv

from sheska.cog import scheduler_cog
from sheska.configuration.app_configuration import AppConfig
from sheska.configuration.credentials import PlatformCredentials
from sheska.database.db_connection import db_connection
from sheska.repositories.announcement_repo import AnnouncementRegistry
from sheska.scheduler.platforms.discord_webhook import DiscordWebhookMessage, DiscordWebhookMessageSerializer
from sheska.scheduler.platforms.x_post import XPost, XPostSerializer
from sheska.scheduler.scheduler import Scheduler
from sheska.util.logger import get_logger, handle_async_exception, handle_exception


logger = get_logger("main")


def load_environment() -> str:
    """Load environment variables and return the Discord bot token.

    Raises
    ------
    SystemExit
        If the required ``DISCORD_BOT_TOKEN`` variable is missing.
    """
    load_dotenv(dotenv_path=BASE_DIR / ".env")
    token = os.getenv("DISCORD_BOT_TOKEN")
    if not token:
        logger.critical("'DISCORD_BOT_TOKEN' environment variable not set. Bot cannot start.")
        sys.exit(1)
    return token


def logger_channel_from_env() -> int | None:
    raw = os.getenv("DISCORD_LOGGER_CHANNEL")
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("DISCORD_LOGGER_CHANNEL=%r is not a channel id; failures won't be reported", raw)
        return None


def build_scheduler(registry: AnnouncementRegistry, config: AppConfig, credentials: PlatformCredentials) -> Scheduler[int]:
    """Create the scheduler and register every post type it can load."""
    scheduler: Scheduler[int] = Scheduler(registry, config.scheduler_settings)
    scheduler.register_post_type(DiscordWebhookMessage, DiscordWebhookMessageSerializer(credentials.discord_webhook))
    scheduler.register_post_type(XPost, XPostSerializer(credentials))
    return scheduler


def create_bot(scheduler: Scheduler[Any], config: AppConfig) -> discord.Bot:
    """Instantiate the Discord bot and register its cogs."""
    intents = discord.Intents.default()
    bot = discord.Bot(intents=intents)
    scheduler_cog.setup(
        bot,
        scheduler,
        logger_channel_from_env(),
        synchronize_delay=config.scheduler_settings.synchronize_delay_seconds,
    )
    logger.info("All cogs loaded successfully.")
    return bot


async def async_main() -> int:
    """Bootstrap the database, scheduler and bot, returning an exit code."""
    asyncio.get_running_loop().set_exception_handler(handle_async_exception)

    token = load_environment()
    config = AppConfig(BASE_DIR / "config" / "app_config.yml")
    credentials = PlatformCredentials.from_env()
    if not credentials.discord_webhook:
        logger.warning("'DISCORD_WEBHOOK' is not set; Discord posts will fail when they fire.")

    database_path = config.database_path
    if not database_path.is_absolute():
        database_path = BASE_DIR / database_path

    try:
        await db_connection.open(database_path)
    except Exception as exc:
        logger.critical("Failed to initialize database: %s", exc)
        return 1

    scheduler = build_scheduler(AnnouncementRegistry(db_connection), config, credentials)
    bot = create_bot(scheduler, config)

    exit_code = 0
    try:
        logger.info("Attempting to connect to Discord…")
        await bot.start(token)
    except asyncio.CancelledError:
        logger.info("Bot start cancelled; proceeding to shutdown")
    except Exception as exc:
        logger.critical("Discord bot runtime error: %s", exc)
        exit_code = 1
    finally:
        if not bot.is_closed():
            await bot.close()
        await scheduler.stop()
        await db_connection.close()
        logger.info("Shutdown complete.")

    return exit_code


def main() -> int:
    """Entrypoint that runs the async runtime and returns the process exit code."""
    sys.excepthook = handle_exception
    logger.info("Starting Sheska…")
    try:
        return asyncio.run(async_main())
    except KeyboardInterrupt:
        logger.info("Shutdown requested by user.")
        return 0


if __name__ == "__main__":
    sys.exit(main())
