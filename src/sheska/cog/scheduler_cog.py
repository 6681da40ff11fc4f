"""Cog that ties the post scheduler to the Discord bot lifecycle.

- Arms the posts left pending by a previous run once the bot is ready.
- Reports failed posts in the logger channel.
"""

from __future__ import annotations

import asyncio
from typing import Any, Set

import discord
from discord.ext import commands

from sheska.scheduler.events import Failure, ScheduleEvent
from sheska.scheduler.scheduler import Scheduler
from sheska.util.logger import get_logger

logger = get_logger("scheduler_cog")


class SchedulerCog(commands.Cog):
    """
    Scheduler event handler living inside the bot.

    ``handle`` is called on the task of the post that fired, so the channel
    message is sent from a task of its own.
    """

    def __init__(
        self,
        bot: discord.Bot,
        scheduler: Scheduler[Any],
        logger_channel_id: int | None,
        *,
        synchronize_delay: float = 1.0,
    ) -> None:
        self.bot = bot
        self.scheduler = scheduler
        self.logger_channel_id = logger_channel_id
        self.synchronize_delay = synchronize_delay
        self._synchronized = False
        self._pending_reports: Set[asyncio.Task[None]] = set()
        scheduler.subscribe(self)

    # ------------------------------------------------------------------
    # Cog lifecycle
    # ------------------------------------------------------------------

    @commands.Cog.listener()
    async def on_ready(self) -> None:
        # on_ready fires again after every reconnect
        if self._synchronized:
            return
        self._synchronized = True

        await asyncio.sleep(self.synchronize_delay)
        armed = await self.scheduler.synchronize()
        logger.info("[SCHEDULER COG] Ready, %d pending post(s) armed", armed)

    def cog_unload(self) -> None:
        self.scheduler.unsubscribe(self)
        logger.info("[SCHEDULER COG] Unloaded")

    # ------------------------------------------------------------------
    # Scheduler events
    # ------------------------------------------------------------------

    def handle(self, event: ScheduleEvent[Any]) -> None:
        if not isinstance(event, Failure):
            return
        task = asyncio.get_running_loop().create_task(self.report_failure(event))
        self._pending_reports.add(task)
        task.add_done_callback(self._pending_reports.discard)

    async def report_failure(self, event: Failure[Any]) -> None:
        if self.logger_channel_id is None:
            logger.warning("[SCHEDULER COG] Post %s failed (%s), no logger channel set", event.post.id, event.reason)
            return

        try:
            channel = self.bot.get_channel(self.logger_channel_id) or await self.bot.fetch_channel(self.logger_channel_id)
            await channel.send(
                content=f"Hubo un problema mandando un mensaje: `<id={event.post.id}, description={event.reason}>`"
            )
        except discord.HTTPException as exc:
            logger.error("[SCHEDULER COG] Could not report failure of post %s: %s", event.post.id, exc)


def setup(bot: discord.Bot, scheduler: Scheduler[Any], logger_channel_id: int | None, synchronize_delay: float = 1.0) -> SchedulerCog:
    """Register the scheduler cog with the bot and return it."""
    cog = SchedulerCog(bot, scheduler, logger_channel_id, synchronize_delay=synchronize_delay)
    bot.add_cog(cog)
    return cog
