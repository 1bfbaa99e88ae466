from __future__ import annotations

import logging

import discord
from discord.ext import commands
from dotenv import load_dotenv

from .commands import register_commands
from .config import Config, load_config
from .controller import ScanController
from .db import Database
from .reporter import Reporter


def report_channel_problem(
    guild: discord.Guild | None,
    report_channel_id: int,
    user: discord.abc.Snowflake | None,
) -> str | None:
    """Describe what stops the bot from posting summaries, or None when it can."""
    if guild is None:
        return "configured guild not found"

    channel = guild.get_channel(report_channel_id)
    if channel is None or channel.type is not discord.ChannelType.text:
        return f"report channel {report_channel_id} is missing or not a text channel"

    me = guild.me
    if me is None and user is not None:
        me = guild.get_member(user.id)
    if me is None:
        return f"bot is not a member of guild {guild.id}"

    perms = channel.permissions_for(me)
    if not perms.view_channel or not perms.send_messages:
        return f"missing view/send permission in report channel {report_channel_id}"
    return None


class ScanStationBot(commands.Bot):
    def __init__(self, config: Config, db: Database) -> None:
        intents = discord.Intents.none()
        intents.guilds = True

        super().__init__(command_prefix="!", intents=intents)

        self.config = config
        self.db = db
        self.controller = ScanController(
            db=db,
            tz=config.timezone,
            debounce_ms=config.scan_debounce_ms,
            max_retries=config.toggle_max_retries,
            default_break=(config.default_break_start, config.default_break_end),
        )
        self.reporter = Reporter(self.controller)

        self.logger = logging.getLogger("scan-station-bot")

        self.report_channel: discord.TextChannel | None = None

    async def setup_hook(self) -> None:
        register_commands(self)
        await self.tree.sync(guild=discord.Object(id=self.config.guild_id))

    async def on_ready(self) -> None:
        self.logger.info("Connected as %s (%s)", self.user, self.user.id if self.user else "unknown")
        if self.report_channel is not None:
            return

        guild = self.get_guild(self.config.guild_id)
        problem = report_channel_problem(guild, self.config.report_channel_id, self.user)
        if problem is not None:
            self.logger.error("Startup check failed: %s", problem)
            await self.close()
            return

        self.report_channel = guild.get_channel(self.config.report_channel_id)
        self.logger.info("Reporting to #%s in %s", self.report_channel.name, guild.name)

    async def close(self) -> None:
        self.db.close()
        await super().close()


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def main() -> None:
    load_dotenv()
    configure_logging()

    config = load_config()
    db = Database(config.db_path)
    db.initialize()

    bot = ScanStationBot(config=config, db=db)
    bot.run(config.discord_token)


if __name__ == "__main__":
    main()
